import queue
import subprocess
import threading
import time
import pytest
import yaml
from unittest.mock import patch
from restreamer.config.models import Destination, EncodingSettings, RestreamSettings
from restreamer.domain.events import DestinationHealthChanged
from restreamer.infrastructure.credentials import StaticCredentialStore
from restreamer.infrastructure.event_bus import EventBus
from restreamer.pipeline.supervisor import ProcessSupervisor

# ============================================================================
# Fake ffmpeg process
# ============================================================================

class FakeStderr:
    """Binary pipe whose read1() blocks until the test writes or closes it."""

    def __init__(self):
        self._chunks: "queue.Queue" = queue.Queue()

    def write(self, data: bytes):
        self._chunks.put(data)

    def close(self):
        self._chunks.put(b"")

    def read1(self, size=-1):
        chunk = self._chunks.get()
        if not chunk:
            # Stay at EOF for later reads
            self._chunks.put(b"")
        return chunk


class FakeProcess:
    """Scripted stand-in for subprocess.Popen running ffmpeg.

    Tests push stderr lines with emit() or raw bytes with emit_raw() and end the
    process with exit(code).
    terminate() exits with 255 unless ignore_terminate is set; kill() always exits.
    """

    _next_pid = 40000

    def __init__(self, args=None, ignore_terminate=False):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.args = list(args or [])
        self.returncode = None
        self.ignore_terminate = ignore_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = threading.Event()
        self.stderr = FakeStderr()

    def emit(self, line: str):
        self.stderr.write((line + "\n").encode())

    def emit_raw(self, data: bytes):
        self.stderr.write(data)

    def exit(self, code: int = 0):
        if self._exited.is_set():
            return
        self.returncode = code
        self.stderr.close()
        self._exited.set()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.args, timeout)
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.exit(255)

    def kill(self):
        self.kill_calls += 1
        self.exit(-9)


class FakeTimer:
    """threading.Timer replacement that only fires when the test says so."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class SpawnRecorder:
    """Popen side effect collecting every spawned FakeProcess.

    `script`, when set, is called with each new process before it is returned.
    """

    def __init__(self):
        self.processes = []
        self.ignore_terminate = False
        self.script = None

    def __call__(self, cmd, **kwargs):
        proc = FakeProcess(cmd, ignore_terminate=self.ignore_terminate)
        self.processes.append(proc)
        if self.script is not None:
            self.script(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Mutable settings object returned by the supervisor's provider."""
    return RestreamSettings(auto_reconnect=True, max_retries=3, buffer_duration=0)


@pytest.fixture
def make_destination():
    def _make(dest_id="yt", **overrides):
        data = {
            "id": dest_id,
            "platform": "custom",
            "name": f"Dest {dest_id}",
            "url": f"rtmp://{dest_id}.example.com/live/",
            "enabled": True,
        }
        data.update(overrides)
        return Destination(**data)
    return _make


@pytest.fixture
def x264_destination(make_destination):
    return make_destination(
        "ig",
        encoding=EncodingSettings(encoder="libx264", bitrate=3500, resolution="720p", fps=30),
    )


@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "restreamer.yaml"

    content = {
        "settings": {
            "rtmp_port": 1936,
            "buffer_duration": 0.5,
            "auto_reconnect": True,
            "max_retries": 2,
        },
        "destinations": [
            {
                "id": "yt",
                "platform": "youtube",
                "encoding": {"encoder": "libx264", "bitrate": 6000, "resolution": "1080p", "fps": 60},
            },
            {"id": "tw", "platform": "twitch", "enabled": False},
        ],
        "stream_keys": {"yt": "yt-key", "tw": 12345},
    }

    with open(conf_file, "w") as f:
        yaml.dump(content, f)

    return conf_file


# ============================================================================
# EventBus / Supervisor Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()


@pytest.fixture
def status_log(event_bus):
    """Every DestinationStatus published by the supervisor, in order."""
    statuses = []
    event_bus.subscribe(DestinationHealthChanged, lambda e: statuses.append(e.status))
    return statuses


@pytest.fixture
def credentials():
    return StaticCredentialStore({"yt": "yt-key", "tw": "tw-key", "ig": "ig-key"})


@pytest.fixture
def timers():
    created = []

    def factory(interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        created.append(timer)
        return timer

    factory.created = created
    return factory


@pytest.fixture
def spawner():
    recorder = SpawnRecorder()
    with patch("subprocess.Popen", side_effect=recorder):
        yield recorder


@pytest.fixture
def supervisor(event_bus, settings, credentials, timers, spawner):
    sup = ProcessSupervisor(
        event_bus,
        lambda: settings,
        credentials,
        ffmpeg_path="/usr/bin/ffmpeg",
        timer_factory=timers,
        stop_timeout=0.2,
    )
    sup.set_ingest_url("rtmp://localhost:1935/live/stream")
    yield sup
    # Do not leave reader threads blocked on fake stderr
    for proc in spawner.processes:
        proc.exit(0)


@pytest.fixture
def wait():
    return wait_for


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
