import threading
from typing import Dict, List, Optional
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.box import ROUNDED
from restreamer.config.models import Destination
from restreamer.domain.events import DestinationStatusChanged, IngestStatusChanged
from restreamer.domain.models import DestinationHealth, DestinationStatus, IngestStatus
from restreamer.infrastructure.event_bus import EventBus

HEALTH_STYLES = {
    DestinationHealth.IDLE: ("○", "dim"),
    DestinationHealth.CONNECTING: ("◌", "yellow"),
    DestinationHealth.LIVE: ("●", "green"),
    DestinationHealth.RETRYING: ("↻", "dark_orange"),
    DestinationHealth.ERROR: ("✖", "red"),
}


def format_uptime(seconds: Optional[int]) -> str:
    if seconds is None:
        return "--"
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    return f"{h:d}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


def render_ingest_panel(ingest: IngestStatus) -> Panel:
    if not ingest.connected:
        body = Text("Waiting for ingest stream…", style="dim")
    else:
        parts = [f"from {ingest.client_ip or 'unknown'}"]
        if ingest.codec:
            parts.append(ingest.codec)
        if ingest.resolution:
            parts.append(ingest.resolution)
        if ingest.fps:
            parts.append(f"{ingest.fps:g} fps")
        if ingest.bitrate:
            parts.append(f"{ingest.bitrate} kbps")
        parts.append(f"up {format_uptime(ingest.uptime)}")
        body = Text("  ".join(parts), style="green")
    return Panel(body, title="Ingest", box=ROUNDED)


def render_destination_table(destinations: List[Destination],
                             statuses: Dict[str, DestinationStatus]) -> Table:
    table = Table(box=ROUNDED, expand=True)
    table.add_column("Destination")
    table.add_column("Health")
    table.add_column("Bitrate", justify="right")
    table.add_column("FPS", justify="right")
    table.add_column("Uptime", justify="right")
    table.add_column("CPU", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Message", overflow="fold")

    for destination in destinations:
        # No status means idle
        status = statuses.get(destination.id) or DestinationStatus(
            id=destination.id, health=DestinationHealth.IDLE
        )
        icon, style = HEALTH_STYLES[status.health]
        name = destination.name if destination.enabled else f"{destination.name} (disabled)"
        table.add_row(
            name,
            Text(f"{icon} {status.health.value}", style=style),
            f"{status.bitrate:.0f} kbps" if status.bitrate is not None else "--",
            f"{status.fps:.1f}" if status.fps is not None else "--",
            format_uptime(status.uptime),
            f"{status.cpu_percent}%" if status.cpu_percent is not None else "--",
            str(status.retry_count),
            status.error or "",
        )
    return table


class Dashboard:
    """Live terminal view fed by the aggregated status events."""

    def __init__(self, bus: EventBus, destinations: List[Destination],
                 console: Optional[Console] = None):
        self.destinations = destinations
        self.console = console or Console()
        self._lock = threading.RLock()
        self._ingest = IngestStatus()
        self._statuses: Dict[str, DestinationStatus] = {}
        self._live: Optional[Live] = None
        bus.subscribe(DestinationStatusChanged, self.on_destination_status)
        bus.subscribe(IngestStatusChanged, self.on_ingest_status)

    def on_destination_status(self, event: DestinationStatusChanged):
        with self._lock:
            if event.status.health == DestinationHealth.IDLE:
                self._statuses.pop(event.status.id, None)
            else:
                self._statuses[event.status.id] = event.status

    def on_ingest_status(self, event: IngestStatusChanged):
        with self._lock:
            self._ingest = event.status

    def create_display(self) -> RenderableType:
        with self._lock:
            ingest = self._ingest
            statuses = dict(self._statuses)
        return Group(render_ingest_panel(ingest), render_destination_table(self.destinations, statuses))

    def refresh(self):
        if self._live:
            self._live.update(self.create_display())

    def start(self):
        self._live = Live(self.create_display(), console=self.console, refresh_per_second=4)
        self._live.start()
        return self

    def stop(self):
        if self._live:
            self._live.update(self.create_display())
            self._live.stop()
            self._live = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
