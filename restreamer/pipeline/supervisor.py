"""Process supervisor: one ffmpeg relay per destination.

Spawns ffmpeg with arguments synthesized from each destination's encoding
settings, follows its stderr for progress telemetry, retries abnormal exits with
capped exponential backoff and exposes one DestinationStatus per destination.

Threading model:
- one daemon reader thread per ffmpeg process (stderr lines, then exit code);
- one cancellable retry timer per destination while a retry is pending;
- public calls from any thread; start_all/stop_all fan out over a thread pool.

All access to the id → runtime map goes through a re-entrant lock. Callbacks
check that their runtime is still the current one for its id, so exits of
superseded or stopped processes never trigger a retry. Status events are
published under the same lock, which keeps the per-destination event order
strict (connecting → live → retrying/error → idle). Subscribers therefore must
not call start_all()/stop_all() synchronously from an event callback; hand the
call to another thread instead.
"""

import concurrent.futures
import logging
import math
import subprocess
import threading
import time
from typing import Callable, Dict, List, Optional
from restreamer.config.models import Destination, RestreamSettings
from restreamer.domain.events import DestinationHealthChanged
from restreamer.domain.models import AvailableEncoders, DestinationHealth, DestinationStatus
from restreamer.infrastructure.credentials import CredentialStore
from restreamer.infrastructure.event_bus import EventBus
from restreamer.infrastructure.ffmpeg import (
    build_spawn_args,
    build_stream_url,
    iter_stderr_lines,
    parse_progress_line,
    redact_stream_key,
)
from restreamer.infrastructure.ffmpeg_locator import detect_encoders, locate_ffmpeg
from restreamer.infrastructure.process_stats import query_cpu_usage

RETRY_BASE_DELAY_MS = 2000
RETRY_MAX_DELAY_MS = 60000
STOP_GRACE_PERIOD_S = 3.0
NO_STREAM_KEY_ERROR = "No stream key configured"
NO_DESTINATION_URL_ERROR = "No destination URL configured"


def compute_backoff_delay_ms(retry_count: int) -> int:
    """Delay before retry number retry_count + 1: 2s, 4s, 8s ... capped at 60s."""
    return min(RETRY_BASE_DELAY_MS * 2 ** retry_count, RETRY_MAX_DELAY_MS)


class _DestinationRuntime:
    """Mutable bookkeeping for one destination's current ffmpeg process."""

    def __init__(self, destination: Destination, retry_count: int,
                 process: Optional[subprocess.Popen] = None):
        self.destination = destination
        self.process = process
        self.retry_count = retry_count
        self.status = DestinationStatus(
            id=destination.id,
            health=DestinationHealth.CONNECTING,
            retry_count=retry_count,
        )
        self.retry_timer = None
        self.start_time: Optional[float] = None  # Latched on first telemetry line
        self.stopping = False
        self.reader: Optional[threading.Thread] = None


class ProcessSupervisor:
    """Starts, watches, retries and stops one ffmpeg relay per destination.

    Args:
        event_bus: Receives a DestinationHealthChanged for every status change.
        settings_provider: Returns the current RestreamSettings; called per operation
            so that retry policy and buffering changes apply without a restart.
        credential_store: Stream key lookup by destination id.
        ffmpeg_path: Binary to run until initialize() finds a better one.
        timer_factory: threading.Timer compatible factory for retry scheduling.
        stop_timeout: Grace period between SIGTERM and SIGKILL on stop.
        clock: Monotonic clock used for uptime.
    """

    def __init__(
        self,
        event_bus: EventBus,
        settings_provider: Callable[[], RestreamSettings],
        credential_store: CredentialStore,
        ffmpeg_path: str = "ffmpeg",
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        stop_timeout: float = STOP_GRACE_PERIOD_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.event_bus = event_bus
        self.settings_provider = settings_provider
        self.credential_store = credential_store
        self.ffmpeg_path = ffmpeg_path
        self.available_encoders = AvailableEncoders()
        self.logger = logging.getLogger(__name__)

        self._timer_factory = timer_factory
        self._stop_timeout = stop_timeout
        self._clock = clock
        self._ingest_url = ""
        self._running = False
        self._instances: Dict[str, _DestinationRuntime] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def set_ingest_url(self, url: str):
        """URL every subsequently spawned ffmpeg pulls from. Running relays keep theirs."""
        with self._lock:
            self._ingest_url = url

    @property
    def ingest_url(self) -> str:
        return self._ingest_url

    def initialize(self) -> Optional[str]:
        """Locates ffmpeg and caches its hardware encoders. Returns the path or None."""
        settings = self.settings_provider()
        detected = locate_ffmpeg(settings.ffmpeg_path)
        if detected:
            self.ffmpeg_path = detected
            self.available_encoders = detect_encoders(detected)
            hw = ", ".join(self.available_encoders.hardware) or "none"
            self.logger.info(f"FFMPEG_FOUND: {detected} (hardware encoders: {hw})")
        else:
            self.logger.warning("FFMPEG_MISSING: no usable ffmpeg found, relays will fail to start")
        return detected

    def get_available_encoders(self) -> AvailableEncoders:
        return self.available_encoders

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start_destination(self, destination: Destination):
        """(Re)starts the relay for one destination with a fresh retry budget."""
        with self._lock:
            exists = destination.id in self._instances
        if exists:
            self.stop_destination(destination.id)

        if not destination.url.strip():
            # Presets without a default URL (custom, tiktok, ...) need one in the config
            self.logger.warning(f"FFMPEG_NO_URL: {destination.name} has no destination URL")
            with self._lock:
                self._record_error(destination, NO_DESTINATION_URL_ERROR, retry_count=0)
            return

        stream_key = self._resolve_stream_key(destination.id)
        if not stream_key:
            self.logger.warning(f"FFMPEG_NO_KEY: {destination.name} has no stream key")
            with self._lock:
                self._record_error(destination, NO_STREAM_KEY_ERROR, retry_count=0)
            return

        self._spawn(destination, build_stream_url(destination.url, stream_key), 0, stream_key)

    def stop_destination(self, destination_id: str):
        """Stops one relay: SIGTERM, up to stop_timeout for exit, then SIGKILL."""
        with self._lock:
            runtime = self._instances.get(destination_id)
            if runtime is None:
                return
            # Under the lock, so a retry timer that already fired sees stopping=True
            runtime.stopping = True
            if runtime.retry_timer is not None:
                runtime.retry_timer.cancel()
                runtime.retry_timer = None
            process = runtime.process

        if process is not None and process.poll() is None:
            self.logger.info(f"FFMPEG_STOP: {runtime.destination.name}")
            process.terminate()
            try:
                process.wait(timeout=self._stop_timeout)
            except subprocess.TimeoutExpired:
                self.logger.warning(
                    f"FFMPEG_KILL: {runtime.destination.name} ignored SIGTERM for {self._stop_timeout}s"
                )
                process.kill()
                process.wait()

        with self._lock:
            if self._instances.get(destination_id) is runtime:
                del self._instances[destination_id]
            self._publish(DestinationStatus(id=destination_id, health=DestinationHealth.IDLE))

    def start_all(self, destinations: List[Destination]):
        """Enters running mode and starts every enabled destination concurrently."""
        with self._lock:
            self._running = True
        enabled = [d for d in destinations if d.enabled]
        self.logger.info(f"RESTREAM_START: {len(enabled)} of {len(destinations)} destinations enabled")
        self._fan_out(self.start_destination, enabled)

    def stop_all(self):
        """Leaves running mode and stops every tracked destination concurrently."""
        with self._lock:
            self._running = False
            ids = list(self._instances.keys())
        self.logger.info(f"RESTREAM_STOP: stopping {len(ids)} destinations")
        self._fan_out(self.stop_destination, ids)

    def _fan_out(self, func: Callable, items: list):
        if not items:
            return
        with concurrent.futures.ThreadPoolExecutor(max_workers=len(items)) as pool:
            futures = [pool.submit(func, item) for item in items]
            for future in futures:
                future.result()  # Re-raise unexpected faults in the caller

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, destination_id: str) -> Optional[DestinationStatus]:
        with self._lock:
            runtime = self._instances.get(destination_id)
            return runtime.status.model_copy() if runtime else None

    def get_all_statuses(self) -> List[DestinationStatus]:
        with self._lock:
            return [rt.status.model_copy() for rt in self._instances.values()]

    def is_running(self) -> bool:
        return self._running

    def poll_cpu_usage(self):
        """Refreshes cpu_percent of every tracked process with one ps query."""
        with self._lock:
            pids = {
                rt.process.pid: dest_id
                for dest_id, rt in self._instances.items()
                if rt.process is not None and rt.process.pid
            }
        if not pids:
            return

        usage = query_cpu_usage(pids.keys())
        with self._lock:
            for pid, cpu in usage.items():
                runtime = self._instances.get(pids.get(pid, ""))
                if runtime is not None and runtime.process is not None and runtime.process.pid == pid:
                    runtime.status.cpu_percent = int(math.floor(cpu + 0.5))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _publish(self, status: DestinationStatus):
        self.event_bus.publish(DestinationHealthChanged(status=status.model_copy()))

    def _resolve_stream_key(self, destination_id: str) -> Optional[str]:
        try:
            return self.credential_store.get_stream_key(destination_id)
        except Exception:
            # A broken secret backend is a configuration error for this destination
            self.logger.exception(f"CREDENTIALS: lookup failed for {destination_id}")
            return None

    def _record_error(self, destination: Destination, message: str, retry_count: int):
        """Keeps an error entry (no process) so get_status() can explain the failure."""
        runtime = _DestinationRuntime(destination, retry_count)
        runtime.status = DestinationStatus(
            id=destination.id,
            health=DestinationHealth.ERROR,
            error=message,
            retry_count=retry_count,
        )
        self._instances[destination.id] = runtime
        self._publish(runtime.status)

    def _spawn(self, destination: Destination, target_url: str, retry_count: int,
               stream_key: Optional[str] = None):
        settings = self.settings_provider()
        cmd = [self.ffmpeg_path] + build_spawn_args(
            self._ingest_url, destination, target_url, settings.buffer_duration
        )
        self.logger.info(f"FFMPEG_START: {destination.name} (attempt {retry_count + 1})")
        self.logger.debug(f"FFMPEG_CMD: {redact_stream_key(cmd, stream_key)}")

        with self._lock:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except OSError as e:
                self.logger.error(f"FFMPEG_SPAWN_ERROR: {destination.name}: {e}")
                self._record_error(destination, str(e), retry_count)
                return

            runtime = _DestinationRuntime(destination, retry_count, process)
            self._instances[destination.id] = runtime
            self._publish(runtime.status)

            runtime.reader = threading.Thread(
                target=self._watch,
                args=(runtime,),
                name=f"ffmpeg-{destination.id}",
                daemon=True,
            )
            runtime.reader.start()

    def _watch(self, runtime: _DestinationRuntime):
        """Reader thread body: telemetry until EOF, then exit handling."""
        process = runtime.process
        if process.stderr:
            for line in iter_stderr_lines(process.stderr):
                self._on_stderr_line(runtime, line)
        code = process.wait()
        self._on_exit(runtime, code)

    def _is_current(self, runtime: _DestinationRuntime) -> bool:
        return not runtime.stopping and self._instances.get(runtime.destination.id) is runtime

    def _on_stderr_line(self, runtime: _DestinationRuntime, line: str):
        stats = parse_progress_line(line)
        if stats is None:
            return

        now = self._clock()
        with self._lock:
            if not self._is_current(runtime):
                return
            if runtime.start_time is None:
                runtime.start_time = now
                self.logger.info(f"FFMPEG_LIVE: {runtime.destination.name}")
            runtime.status = DestinationStatus(
                id=runtime.destination.id,
                health=DestinationHealth.LIVE,
                bitrate=stats.bitrate,
                fps=stats.fps,
                uptime=int(now - runtime.start_time),
                retry_count=runtime.retry_count,
                cpu_percent=runtime.status.cpu_percent,
            )
            self._publish(runtime.status)

    def _on_exit(self, runtime: _DestinationRuntime, code: Optional[int]):
        destination = runtime.destination
        self.logger.info(f"FFMPEG_EXIT: {destination.name} exited with code {code}")

        with self._lock:
            if not self._running or not self._is_current(runtime):
                return

            settings = self.settings_provider()
            if settings.auto_reconnect and runtime.retry_count < settings.max_retries:
                delay_ms = compute_backoff_delay_ms(runtime.retry_count)
                self.logger.info(f"FFMPEG_RETRY: {destination.name} in {delay_ms}ms")
                runtime.status = DestinationStatus(
                    id=destination.id,
                    health=DestinationHealth.RETRYING,
                    retry_count=runtime.retry_count + 1,
                    error=f"Disconnected (exit code {code}). Retrying...",
                )
                timer = self._timer_factory(delay_ms / 1000.0, self._retry, args=(runtime,))
                timer.daemon = True
                runtime.retry_timer = timer
                self._publish(runtime.status)
                timer.start()
            else:
                self.logger.error(f"FFMPEG_GIVE_UP: {destination.name} after {runtime.retry_count} retries")
                runtime.status = DestinationStatus(
                    id=destination.id,
                    health=DestinationHealth.ERROR,
                    error=f"Disconnected (exit code {code}). Max retries reached.",
                    retry_count=runtime.retry_count,
                )
                del self._instances[destination.id]
                self._publish(runtime.status)

    def _retry(self, runtime: _DestinationRuntime):
        """Retry timer body. The stream key is looked up again; it may have changed."""
        with self._lock:
            if not self._running or not self._is_current(runtime):
                return
            runtime.retry_timer = None

        destination = runtime.destination
        stream_key = self._resolve_stream_key(destination.id)

        with self._lock:
            # stop_destination() may have run while the key was being fetched
            if not self._running or not self._is_current(runtime):
                return
            next_retry = runtime.retry_count + 1
            if not stream_key:
                self._record_error(destination, NO_STREAM_KEY_ERROR, retry_count=next_retry)
                return
            self._spawn(destination, build_stream_url(destination.url, stream_key), next_retry, stream_key)
