import logging
import re
import subprocess
from pathlib import Path
from typing import Optional
from restreamer.config.models import HARDWARE_ENCODERS
from restreamer.domain.models import AvailableEncoders

logger = logging.getLogger(__name__)

COMMON_PATHS = [
    "/usr/local/bin/ffmpeg",
    "/usr/bin/ffmpeg",
    "/opt/homebrew/bin/ffmpeg",
    "C:\\ffmpeg\\bin\\ffmpeg.exe",
    "C:\\Program Files\\ffmpeg\\bin\\ffmpeg.exe",
]

VERSION_BANNER = "ffmpeg version"
PROBE_TIMEOUT_S = 5


def is_valid_ffmpeg(path: str) -> bool:
    """Runs `<path> -version`; any spawn error, timeout or foreign binary is invalid."""
    try:
        result = subprocess.run(
            [path, "-version"],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_S,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"FFMPEG_PROBE: {path} unusable: {e}")
        return False
    return result.returncode == 0 and VERSION_BANNER in (result.stdout or "")


def locate_ffmpeg(custom_path: Optional[str] = None) -> Optional[str]:
    """Finds a working ffmpeg: custom path, then PATH, then common install locations."""
    if custom_path and custom_path.strip():
        candidate = custom_path.strip()
        if is_valid_ffmpeg(candidate):
            return candidate
        logger.warning(f"FFMPEG_PROBE: configured path {candidate} is not a valid ffmpeg")

    # Bare name is resolved through PATH by the OS
    if is_valid_ffmpeg("ffmpeg"):
        return "ffmpeg"

    for path in COMMON_PATHS:
        if Path(path).exists() and is_valid_ffmpeg(path):
            return path

    return None


def detect_encoders(ffmpeg_path: str) -> AvailableEncoders:
    """Lists hardware H.264 encoders compiled into the binary; libx264 is always assumed."""
    try:
        result = subprocess.run(
            [ffmpeg_path, "-hide_banner", "-encoders"],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_S,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"FFMPEG_ENCODERS: probe failed: {e}")
        return AvailableEncoders()

    output = result.stdout or ""
    hardware = [name for name in HARDWARE_ENCODERS if re.search(rf"\b{name}\b", output)]
    return AvailableEncoders(hardware=hardware)
