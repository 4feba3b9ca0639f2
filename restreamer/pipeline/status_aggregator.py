import logging
import threading
from typing import List, Optional
from restreamer.domain.events import (
    DestinationHealthChanged,
    DestinationStatusChanged,
    IngestConnected,
    IngestDisconnected,
    IngestStatsUpdated,
    IngestStatusChanged,
)
from restreamer.domain.models import DestinationStatus, IngestStatus
from restreamer.infrastructure.event_bus import EventBus
from restreamer.infrastructure.ingest import IngestSource
from restreamer.pipeline.supervisor import ProcessSupervisor

DEFAULT_POLL_INTERVAL_MS = 2000


class StatusAggregator:
    """Merges ingest and destination events into one outward-facing stream.

    Consumers subscribe to IngestStatusChanged and DestinationStatusChanged on
    `event_bus`. Polling re-emits every current destination status so that a
    consumer which missed an edge still converges.
    """

    def __init__(self, ingest: IngestSource, supervisor: ProcessSupervisor,
                 event_bus: Optional[EventBus] = None):
        self.ingest = ingest
        self.supervisor = supervisor
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._poll_lock = threading.Lock()

        ingest.event_bus.subscribe(IngestConnected, self.on_ingest_connected)
        ingest.event_bus.subscribe(IngestDisconnected, self.on_ingest_disconnected)
        ingest.event_bus.subscribe(IngestStatsUpdated, self.on_ingest_stats)
        supervisor.event_bus.subscribe(DestinationHealthChanged, self.on_destination_health)

    def on_ingest_connected(self, event: IngestConnected):
        self.event_bus.publish(IngestStatusChanged(status=event.status))

    def on_ingest_disconnected(self, event: IngestDisconnected):
        self.event_bus.publish(IngestStatusChanged(status=IngestStatus(connected=False)))

    def on_ingest_stats(self, event: IngestStatsUpdated):
        self.event_bus.publish(IngestStatusChanged(status=event.status))

    def on_destination_health(self, event: DestinationHealthChanged):
        self.event_bus.publish(DestinationStatusChanged(status=event.status))

    def get_ingest_status(self) -> IngestStatus:
        return self.ingest.ingest_status

    def get_destination_statuses(self) -> List[DestinationStatus]:
        return self.supervisor.get_all_statuses()

    def emit_all(self):
        """Re-emits every current destination status."""
        for status in self.supervisor.get_all_statuses():
            self.event_bus.publish(DestinationStatusChanged(status=status))

    def _poll(self, stop_event: threading.Event, interval_s: float):
        while not stop_event.wait(interval_s):
            self.emit_all()

    def start_polling(self, interval_ms: int = DEFAULT_POLL_INTERVAL_MS):
        """Starts periodic re-emission, replacing any running poller."""
        with self._poll_lock:
            self._stop_locked()
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._poll,
                args=(stop_event, interval_ms / 1000.0),
                name="status-poll",
                daemon=True,
            )
            self._thread.start()
        self.logger.debug(f"STATUS_POLL: every {interval_ms}ms")

    def stop_polling(self):
        with self._poll_lock:
            self._stop_locked()

    def is_polling(self) -> bool:
        with self._poll_lock:
            return self._thread is not None

    def _stop_locked(self):
        if self._stop_event is not None:
            self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)
        self._stop_event = None
        self._thread = None
