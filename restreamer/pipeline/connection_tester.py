import logging
import subprocess
import threading
import time
from typing import Callable, List, Optional, Union
from restreamer.domain.models import ConnectionTestResult
from restreamer.infrastructure.ffmpeg import FRAME_RE, build_stream_url, iter_stderr_lines

TEST_DURATION_S = 3
HARD_TIMEOUT_S = 8.0
MAX_ERROR_LENGTH = 200

AUTH_MARKERS = ("Authorization", "Unauthorized", "403", "NetStream.Publish.BadName", "Authentication")
UNREACHABLE_MARKERS = ("Connection refused", "Connection timed out", "No route to host", "getaddrinfo")
REJECTED_MARKERS = ("Input/output error",)
SPECIFIC_LINE_MARKERS = ("Server error", "NetStream", "RTMP_")

AUTH_FAILED_MESSAGE = "Authentication failed — check your stream key"
UNREACHABLE_MESSAGE = "Could not reach server — check the RTMP URL"
REJECTED_MESSAGE = "Connection rejected — check that your stream key is correct"


def build_test_args(target_url: str) -> List[str]:
    """Tiny synthetic black video + silent audio, pushed for a few seconds."""
    return [
        "-f", "lavfi", "-i", "color=black:s=160x90:r=1",
        "-f", "lavfi", "-i", "anullsrc=r=44100:cl=mono",
        "-t", str(TEST_DURATION_S),
        "-c:v", "libx264", "-preset", "ultrafast", "-tune", "zerolatency", "-b:v", "100k",
        "-c:a", "aac", "-ar", "44100",
        "-f", "flv",
        target_url,
    ]


def classify_failure(stderr: str, exit_code: Optional[int]) -> str:
    """Maps ffmpeg diagnostics of a failed test push to a user-facing message."""
    if any(marker in stderr for marker in AUTH_MARKERS):
        return AUTH_FAILED_MESSAGE
    if any(marker in stderr for marker in UNREACHABLE_MARKERS):
        return UNREACHABLE_MESSAGE
    if any(marker in stderr for marker in REJECTED_MARKERS):
        return REJECTED_MESSAGE

    lines = [line for line in stderr.splitlines() if line.strip()]
    specific = next((l for l in lines if any(m in l for m in SPECIFIC_LINE_MARKERS)), None)
    fallback = lines[-1] if lines else f"FFmpeg exited with code {exit_code}"
    return (specific or fallback)[:MAX_ERROR_LENGTH]


class ConnectionTester:
    """Checks a destination URL + stream key with a short throwaway ffmpeg push.

    Success is declared as soon as ffmpeg prints a progress line, i.e. the server
    accepted the publish and frames are flowing.
    """

    def __init__(self, ffmpeg_path: Union[str, Callable[[], str]] = "ffmpeg",
                 timeout: float = HARD_TIMEOUT_S):
        self._ffmpeg_path = ffmpeg_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    @property
    def ffmpeg_path(self) -> str:
        # Accepts a provider so the tester follows the supervisor's located binary
        return self._ffmpeg_path() if callable(self._ffmpeg_path) else self._ffmpeg_path

    def test(self, url: str, stream_key: str) -> ConnectionTestResult:
        cmd = [self.ffmpeg_path] + build_test_args(build_stream_url(url, stream_key))
        self.logger.info(f"CONN_TEST_START: {url}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            self.logger.error(f"CONN_TEST_ERROR: {e}")
            return ConnectionTestResult(success=False, error=f"FFmpeg error: {e}")

        stderr_lines: List[str] = []
        got_frames = threading.Event()

        def _reader():
            if not process.stderr:
                return
            for line in iter_stderr_lines(process.stderr):
                stderr_lines.append(line)
                if FRAME_RE.search(line):
                    got_frames.set()

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        deadline = time.monotonic() + self.timeout
        while True:
            if got_frames.is_set():
                # Connection proven, no need to wait out the test duration
                self._terminate(process)
                self.logger.info(f"CONN_TEST_OK: {url}")
                return ConnectionTestResult(success=True)
            if process.poll() is not None:
                break
            if time.monotonic() >= deadline:
                # Neither frames nor an error within the hard timeout
                process.kill()
                process.wait()
                self.logger.info(f"CONN_TEST_TIMEOUT: {url}")
                return ConnectionTestResult(success=True)
            got_frames.wait(0.1)

        reader_thread.join(timeout=1.0)
        code = process.returncode
        if got_frames.is_set() or code == 0:
            self.logger.info(f"CONN_TEST_OK: {url} (exit code {code})")
            return ConnectionTestResult(success=True)

        error = classify_failure("\n".join(stderr_lines), code)
        self.logger.warning(f"CONN_TEST_FAILED: {url}: {error}")
        return ConnectionTestResult(success=False, error=error)

    def _terminate(self, process: subprocess.Popen):
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
