import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple
import requests
from restreamer.config.presets import RTMP_APP_NAME, RTMP_STREAM_KEY
from restreamer.domain.events import IngestConnected, IngestDisconnected, IngestStatsUpdated
from restreamer.domain.models import IngestStatus
from restreamer.infrastructure.event_bus import EventBus

STATS_POLL_INTERVAL_MS = 2000
STATS_REQUEST_TIMEOUT_S = 2.0


def get_local_ip() -> Optional[str]:
    """First non-loopback IPv4 address, i.e. the one the default route uses."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect only selects a route, nothing is sent
        sock.connect(("192.0.2.1", 80))
        ip = sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()
    if not ip or ip.startswith("127.") or ip == "0.0.0.0":
        return None
    return ip


def find_publisher(data: Dict[str, Any], preferred_path: Optional[str] = None) -> Optional[Tuple[str, Dict[str, Any]]]:
    """(stream_path, publisher) of a live publisher in a /api/streams payload.

    The preferred path wins when it is still publishing, otherwise the first one found.
    """
    found = []
    for app_name, streams in (data or {}).items():
        if not isinstance(streams, dict):
            continue
        for stream_name, stream in streams.items():
            publisher = stream.get("publisher") if isinstance(stream, dict) else None
            if isinstance(publisher, dict):
                found.append((f"/{app_name}/{stream_name}", publisher))
    for path, publisher in found:
        if path == preferred_path:
            return path, publisher
    return found[0] if found else None


class IngestSource:
    """State of the local RTMP ingest point.

    The RTMP listener itself is external (node-media-server or compatible). Its
    HTTP API on port + 8000 is polled by start_polling(); publish / unpublish is
    derived from that payload. Listeners with hooks may call on_publish(),
    on_done_publish() and apply_stream_stats() directly instead.
    """

    def __init__(self, event_bus: EventBus, port: int = 1935,
                 host: str = "localhost", clock: Callable[[], float] = time.monotonic,
                 session: Optional[requests.Session] = None):
        self.event_bus = event_bus
        self.port = port
        self.http_port = port + 8000
        self.host = host
        self.logger = logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._status = IngestStatus()
        self._stream_path: Optional[str] = None
        self._connect_time = 0.0
        self._prev_bytes = 0
        self._prev_bytes_time = 0.0
        self._session = session or requests.Session()
        self._poll_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def ingest_status(self) -> IngestStatus:
        with self._lock:
            return self._status.model_copy()

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._status.connected

    @property
    def stream_path(self) -> Optional[str]:
        with self._lock:
            return self._stream_path

    def on_publish(self, stream_path: str, client_ip: Optional[str] = None):
        if not stream_path.startswith("/"):
            stream_path = "/" + stream_path
        now = self._clock()
        with self._lock:
            self._stream_path = stream_path
            self._connect_time = now
            self._prev_bytes = 0
            self._prev_bytes_time = now
            self._status = IngestStatus(
                connected=True,
                client_ip=client_ip or "unknown",
                preview_url=self._preview_url_locked(),
            )
            status = self._status.model_copy()
        self.logger.info(f"INGEST_CONNECTED: {stream_path} from {status.client_ip}")
        self.event_bus.publish(IngestConnected(status=status))

    def on_done_publish(self):
        with self._lock:
            was_connected = self._status.connected
            self._stream_path = None
            self._status = IngestStatus()
        if was_connected:
            self.logger.info("INGEST_DISCONNECTED")
            self.event_bus.publish(IngestDisconnected())

    def get_ingest_url(self) -> str:
        """Full RTMP URL for ffmpeg input, using the actually published path when known."""
        path = self.stream_path or f"/{RTMP_APP_NAME}/{RTMP_STREAM_KEY}"
        return f"rtmp://{self.host}:{self.port}{path}"

    def get_ingest_server_url(self) -> str:
        """Server URL to paste into the encoder (OBS 'Server' field)."""
        return f"rtmp://{self.host}:{self.port}/{RTMP_APP_NAME}"

    def get_network_ingest_url(self) -> str:
        """Server URL for an encoder on another machine of the local network."""
        ip = get_local_ip() or "0.0.0.0"
        return f"rtmp://{ip}:{self.port}/{RTMP_APP_NAME}"

    def get_ingest_stream_key(self) -> str:
        return RTMP_STREAM_KEY

    def get_preview_url(self) -> str:
        with self._lock:
            return self._preview_url_locked()

    def _preview_url_locked(self) -> str:
        path = self._stream_path or f"/{RTMP_APP_NAME}/{RTMP_STREAM_KEY}"
        return f"http://{self.host}:{self.http_port}{path}.flv"

    def apply_stream_stats(self, data: Dict[str, Any]) -> bool:
        """Updates metrics from the listener's /api/streams payload.

        Payload shape: {"<app>": {"<stream>": {"publisher": {...}}}}. Bitrate is
        derived from the byte counter delta between two calls. Returns False when
        the payload has nothing for the current stream.
        """
        now = self._clock()
        with self._lock:
            if not self._status.connected:
                return False
            parts = [p for p in (self._stream_path or "").split("/") if p]
            app_name = parts[0] if parts else RTMP_APP_NAME
            stream_name = parts[1] if len(parts) > 1 else RTMP_STREAM_KEY

            stream = (data.get(app_name) or {}).get(stream_name) if isinstance(data, dict) else None
            publisher = (stream or {}).get("publisher") if isinstance(stream, dict) else None
            if not isinstance(publisher, dict):
                return False

            video = publisher.get("video") or {}
            audio = publisher.get("audio") or {}
            total_bytes = int(publisher.get("bytes") or 0)
            bitrate = self._status.bitrate or 0
            if self._prev_bytes > 0 and self._prev_bytes_time > 0:
                delta_bytes = total_bytes - self._prev_bytes
                delta_s = now - self._prev_bytes_time
                if delta_s > 0 and delta_bytes >= 0:
                    bitrate = round((delta_bytes * 8) / (delta_s * 1000))
            self._prev_bytes = total_bytes
            self._prev_bytes_time = now

            width, height = video.get("width"), video.get("height")
            self._status = IngestStatus(
                connected=True,
                client_ip=self._status.client_ip,
                codec=video.get("codec") or None,
                fps=video.get("fps") or None,
                resolution=f"{width}x{height}" if width and height else None,
                bitrate=bitrate,
                audio_codec=audio.get("codec") or None,
                audio_channels=audio.get("channels") or None,
                sample_rate=audio.get("samplerate") or None,
                uptime=int(now - self._connect_time),
                preview_url=self._preview_url_locked(),
            )
            status = self._status.model_copy()

        self.event_bus.publish(IngestStatsUpdated(status=status))
        return True

    # ------------------------------------------------------------------
    # Listener stats polling
    # ------------------------------------------------------------------

    @property
    def stats_url(self) -> str:
        return f"http://{self.host}:{self.http_port}/api/streams"

    def fetch_stream_stats(self) -> Optional[Dict[str, Any]]:
        """GETs the listener's stream list. None when it is unreachable or not JSON."""
        try:
            response = self._session.get(self.stats_url, timeout=STATS_REQUEST_TIMEOUT_S)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            self.logger.debug(f"INGEST_STATS: {self.stats_url} unavailable: {e}")
            return None
        except ValueError:
            self.logger.debug(f"INGEST_STATS: {self.stats_url} returned non-JSON")
            return None
        return data if isinstance(data, dict) else None

    def poll_once(self) -> bool:
        """One stats round: tracks publish / unpublish, then applies metrics.

        An unreachable listener leaves the current state untouched. Returns True
        when metrics were applied.
        """
        data = self.fetch_stream_stats()
        if data is None:
            return False

        found = find_publisher(data, self.stream_path)
        if found is None:
            if self.connected:
                self.on_done_publish()
            return False

        path, publisher = found
        if not self.connected or self.stream_path != path:
            self.on_publish(path, publisher.get("ip"))
        return self.apply_stream_stats(data)

    def _poll(self, stop_event: threading.Event, interval_s: float):
        self.poll_once()
        while not stop_event.wait(interval_s):
            self.poll_once()

    def start_polling(self, interval_ms: int = STATS_POLL_INTERVAL_MS):
        """Starts polling the listener, replacing any running poller."""
        with self._poll_lock:
            self._stop_locked()
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._poll,
                args=(stop_event, interval_ms / 1000.0),
                name="ingest-poll",
                daemon=True,
            )
            self._thread.start()
        self.logger.debug(f"INGEST_POLL: {self.stats_url} every {interval_ms}ms")

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
            self._thread.join(timeout=STATS_REQUEST_TIMEOUT_S + 1.0)
        self._stop_event = None
        self._thread = None
