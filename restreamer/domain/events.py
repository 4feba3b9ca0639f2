"""Domain events for the restreaming pipeline.

Events represent state changes that flow through the EventBus, decoupling the
process supervisor and the ingest source from whoever renders their state
(dashboard, IPC bridge, tests).

Two layers exist:
- source events, published by the producers (`DestinationHealthChanged` from the
  supervisor, `Ingest*` from the ingest source);
- aggregated events, re-published by the StatusAggregator
  (`DestinationStatusChanged`, `IngestStatusChanged`).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pydantic import BaseModel
from .models import DestinationStatus, IngestStatus


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class DestinationHealthChanged(Event):
    """Emitted by the supervisor on every status transition or telemetry update."""

    status: DestinationStatus


class IngestConnected(Event):
    """Emitted when a publisher starts pushing to the ingest point."""

    status: IngestStatus


class IngestDisconnected(Event):
    """Emitted when the publisher goes away."""

    pass


class IngestStatsUpdated(Event):
    """Emitted when fresh ingest metrics (codec, bitrate, fps) are available."""

    status: IngestStatus


class DestinationStatusChanged(Event):
    """Aggregated destination status, also re-emitted on every poll tick."""

    status: DestinationStatus


class IngestStatusChanged(Event):
    """Aggregated ingest status (connect, disconnect and stats updates)."""

    status: IngestStatus
