import logging
from pathlib import Path
from typing import Optional

def setup_logging(log_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Routes all restreamer logging into one file, restreamer.log by default.

    INFO carries relay lifecycle tags (FFMPEG_START, FFMPEG_LIVE, FFMPEG_RETRY,
    FFMPEG_GIVE_UP, FFMPEG_STOP), ingest connect / disconnect and connection
    tests. DEBUG adds ffmpeg command lines with stream keys masked and poller
    activity. Nothing goes to the console, which belongs to the dashboard.

    Args:
        log_dir: Directory where the log file is written
        debug: If True, enable DEBUG level logging (full ffmpeg command lines)
        log_path: Optional path to log file (overrides log_dir)
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (log_dir / "restreamer.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.FileHandler(log_file)],
        force=True  # Reconfigures when run() is invoked again in-process
    )

    logger = logging.getLogger(__name__)
    logger.info(f"LOG_START: {log_file} (level={logging.getLevelName(level)})")

    return logger
