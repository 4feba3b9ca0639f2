import time
import typer
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from restreamer.config.loader import load_config
from restreamer.config.models import RestreamSettings
from restreamer.config.presets import PLATFORM_ENCODING_PRESETS, PLATFORM_PRESETS
from restreamer.infrastructure.logging import setup_logging
from restreamer.infrastructure.event_bus import EventBus
from restreamer.infrastructure.credentials import (
    ChainedCredentialStore, EnvCredentialStore, StaticCredentialStore
)
from restreamer.infrastructure.ffmpeg_locator import detect_encoders, locate_ffmpeg
from restreamer.infrastructure.ingest import IngestSource
from restreamer.pipeline.supervisor import ProcessSupervisor
from restreamer.pipeline.connection_tester import ConnectionTester
from restreamer.pipeline.status_aggregator import StatusAggregator
from restreamer.ui.dashboard import Dashboard

app = typer.Typer(help="Restreamer - fan one RTMP ingest out to many destinations")


@app.command()
def run(
    config_path: Path = typer.Option(Path("conf/restreamer.yaml"), "--config", "-c", help="Path to YAML config"),
    ingest_url: Optional[str] = typer.Option(
        None, "--ingest-url", help="External URL ffmpeg pulls from; skips waiting for the local ingest"
    ),
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg", help="Override ffmpeg binary path"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", help="Override retry budget per destination"),
    auto_reconnect: Optional[bool] = typer.Option(None, "--reconnect/--no-reconnect", help="Enable/disable automatic retries"),
    buffer: Optional[float] = typer.Option(None, "--buffer", help="Input buffer duration in seconds (0 disables)"),
    log_dir: Path = typer.Option(Path("logs"), "--log-dir", help="Directory for restreamer.log"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides --log-dir)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Start every enabled destination and show live health until Ctrl+C."""
    try:
        config = load_config(config_path)
    except Exception as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    # Apply CLI overrides through validation so bounds still hold
    overrides = {}
    if ffmpeg_path is not None: overrides["ffmpeg_path"] = ffmpeg_path
    if max_retries is not None: overrides["max_retries"] = max_retries
    if auto_reconnect is not None: overrides["auto_reconnect"] = auto_reconnect
    if buffer is not None: overrides["buffer_duration"] = buffer
    try:
        config.settings = RestreamSettings(**{**config.settings.model_dump(), **overrides})
    except ValidationError as e:
        typer.secho(f"Error: invalid option: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    logger = setup_logging(log_dir, debug=debug, log_path=log_path)

    destinations = config.enabled_destinations()
    if not destinations:
        typer.secho("Error: No enabled destinations in config.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    bus = EventBus()
    credentials = ChainedCredentialStore([
        EnvCredentialStore(),
        StaticCredentialStore(config.stream_keys),
    ])
    supervisor = ProcessSupervisor(bus, lambda: config.settings, credentials)
    if supervisor.initialize() is None:
        typer.secho(
            "Error: FFmpeg not found. Install it or pass --ffmpeg.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    ingest = IngestSource(bus, port=config.settings.rtmp_port)
    aggregator = StatusAggregator(ingest, supervisor)
    dashboard = Dashboard(aggregator.event_bus, config.destinations)

    typer.echo(f"Encoder server: {ingest.get_ingest_server_url()}  (network: {ingest.get_network_ingest_url()})")
    typer.echo(f"Encoder stream key: {ingest.get_ingest_stream_key()}")

    live = False
    try:
        with dashboard:
            ingest.start_polling(config.ui.poll_interval_ms)
            aggregator.start_polling(config.ui.poll_interval_ms)
            if not ingest_url:
                logger.info("INGEST_WAIT: destinations start once an ingest stream is connected")
            while True:
                # An explicit --ingest-url points at an external source we cannot observe
                if not live and (ingest_url or ingest.connected):
                    supervisor.set_ingest_url(ingest_url or ingest.get_ingest_url())
                    logger.info(f"Ingest URL: {supervisor.ingest_url}")
                    supervisor.start_all(config.destinations)
                    live = True
                time.sleep(config.ui.cpu_poll_interval_s)
                supervisor.poll_cpu_usage()
                dashboard.refresh()
    except KeyboardInterrupt:
        typer.secho("\nStopping all destinations…", fg=typer.colors.YELLOW)
    finally:
        ingest.stop_polling()
        aggregator.stop_polling()
        # ffmpeg children do not exit with us
        supervisor.stop_all()
        logger.info("Restreamer stopped")


@app.command("test-connection")
def test_connection(
    url: str = typer.Argument(..., help="Destination base URL, e.g. rtmp://a.rtmp.youtube.com/live2"),
    stream_key: str = typer.Argument(..., help="Stream key"),
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg", help="Override ffmpeg binary path"),
):
    """Push a few seconds of test video to check URL and stream key."""
    binary = locate_ffmpeg(ffmpeg_path)
    if binary is None:
        typer.secho("Error: FFmpeg not found.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    result = ConnectionTester(binary).test(url, stream_key)
    if result.success:
        typer.secho("✓ Connection OK", fg=typer.colors.GREEN)
    else:
        typer.secho(f"✖ {result.error}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.command()
def detect(
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg", help="Custom ffmpeg path to try first"),
):
    """Locate ffmpeg and list usable H.264 encoders."""
    binary = locate_ffmpeg(ffmpeg_path)
    if binary is None:
        typer.secho("FFmpeg not found.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    encoders = detect_encoders(binary)
    typer.echo(f"ffmpeg: {binary}")
    typer.echo(f"software encoders: {', '.join(encoders.software)}")
    typer.echo(f"hardware encoders: {', '.join(encoders.hardware) or 'none'}")


@app.command()
def presets():
    """List known platforms, default ingest URLs and recommended encodings."""
    for preset in PLATFORM_PRESETS.values():
        rtmps = " (RTMPS)" if preset.requires_rtmps else ""
        enc = PLATFORM_ENCODING_PRESETS.get(preset.id)
        recommended = f"{enc.bitrate}k {enc.resolution}{enc.fps}" if enc else "-"
        typer.echo(
            f"{preset.id:<10} {preset.name:<14} {recommended:<16} {preset.default_url or '-'}{rtmps}"
        )


if __name__ == "__main__":
    app()
