import math
import re
from typing import BinaryIO, Iterator, List, Optional, Tuple, Union
from restreamer.config.models import Destination, SOFTWARE_ENCODER
from restreamer.config.presets import RESOLUTION_MAP
from restreamer.domain.models import StreamStats

ArgValue = Union[str, int, float]

# Input-side read timeout in microseconds (ffmpeg -rw_timeout)
RW_TIMEOUT_USEC = 5_000_000
MUXING_QUEUE_SIZE = 1024
DEFAULT_X264_PRESET = "veryfast"

# Progress lines look like:
# frame= 1234 fps=30.0 q=-1.0 size= 5632kB time=00:00:41.23 bitrate=1119.1kbits/s speed=1.00x
FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_SIZE_RE = re.compile(r"size=\s*(\S+)")
_TIME_RE = re.compile(r"time=\s*([\d:.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
# ffmpeg ends progress lines with a bare CR and log lines with LF
_LINE_END_RE = re.compile(rb"[\r\n]")
STDERR_CHUNK_SIZE = 4096


class FFmpegArgs:
    """Ordered flag/value pairs, serialized to argv tokens only at spawn time."""

    def __init__(self):
        self._pairs: List[Tuple[str, Optional[ArgValue]]] = []

    def add(self, flag: str, value: Optional[ArgValue] = None) -> "FFmpegArgs":
        self._pairs.append((flag, value))
        return self

    def extend(self, other: "FFmpegArgs") -> "FFmpegArgs":
        self._pairs.extend(other._pairs)
        return self

    def tokens(self) -> List[str]:
        out: List[str] = []
        for flag, value in self._pairs:
            out.append(flag)
            if value is not None:
                out.append(_format_value(value))
        return out


def _format_value(value: ArgValue) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _kbps(value: float) -> str:
    # Half-up, so 1.5x of an odd bitrate does not round to even
    return f"{int(math.floor(value + 0.5))}k"


def build_stream_url(url: str, stream_key: str) -> str:
    """Joins a base ingest URL and a stream key with exactly one slash."""
    return f"{url.rstrip('/')}/{stream_key.lstrip('/')}"


def build_output_args(destination: Destination) -> FFmpegArgs:
    """Output-leg codec arguments for a destination's encoding settings."""
    enc = destination.encoding
    args = FFmpegArgs()
    if enc is None or enc.is_passthrough:
        return args.add("-c", "copy")

    args.add("-c:v", enc.encoder)

    if enc.bitrate:
        args.add("-b:v", _kbps(enc.bitrate))
        if enc.rate_control == "vbr":
            args.add("-maxrate", _kbps(enc.bitrate * 1.5))
            args.add("-bufsize", _kbps(enc.bitrate * 2))
        else:
            # CBR: strict cap, bufsize = bitrate
            args.add("-maxrate", _kbps(enc.bitrate))
            args.add("-bufsize", _kbps(enc.bitrate))

    if enc.encoder == SOFTWARE_ENCODER:
        args.add("-preset", enc.x264_preset or DEFAULT_X264_PRESET)
        args.add("-tune", "zerolatency")

    if enc.resolution != "source":
        dims = RESOLUTION_MAP.get(enc.resolution)
        if dims:
            args.add("-vf", f"scale={dims}")

    if enc.fps != "source":
        args.add("-r", enc.fps)

    if enc.keyframe_interval:
        if enc.fps != "source":
            args.add("-g", enc.fps * enc.keyframe_interval)
        else:
            # Unknown source fps: force keyframes by timestamp instead of frame count
            args.add("-force_key_frames", f"expr:gte(t,n_forced*{enc.keyframe_interval})")

    # Audio is never transcoded
    args.add("-c:a", "copy")
    return args


def build_spawn_args(
    ingest_url: str,
    destination: Destination,
    target_url: str,
    buffer_duration: float = 0.0,
) -> List[str]:
    """Full ffmpeg argv (without the binary) for one destination relay."""
    args = FFmpegArgs().add("-rw_timeout", RW_TIMEOUT_USEC)
    usec = int(round(buffer_duration * 1_000_000)) if buffer_duration > 0 else 0
    if usec:
        args.add("-fflags", "+genpts+discardcorrupt")
        args.add("-analyzeduration", usec)
        args.add("-probesize", usec)

    args.add("-i", ingest_url)
    args.extend(build_output_args(destination))
    args.add("-f", "flv")
    args.add("-flvflags", "no_duration_filesize")

    if usec:
        args.add("-max_muxing_queue_size", MUXING_QUEUE_SIZE)
        args.add("-max_interleave_delta", usec)

    return args.tokens() + [target_url]


def redact_stream_key(cmd: List[str], stream_key: Optional[str]) -> str:
    """Command line for logging with the stream key masked."""
    text = " ".join(cmd)
    if stream_key:
        text = text.replace(stream_key, "****")
    return text


def iter_stderr_lines(stream: BinaryIO, chunk_size: int = STDERR_CHUNK_SIZE) -> Iterator[str]:
    """Yields ffmpeg stderr lines from a binary pipe as soon as CR or LF ends them.

    A text-mode pipe holds a trailing CR back until the next byte arrives, which
    delays every progress line by one update. read1() returns whatever is
    available instead of waiting for a full chunk.
    """
    pending = b""
    while True:
        chunk = stream.read1(chunk_size)
        if not chunk:
            break
        parts = _LINE_END_RE.split(pending + chunk)
        pending = parts.pop()
        for part in parts:
            if part:
                yield part.decode("utf-8", errors="replace")
    if pending:
        yield pending.decode("utf-8", errors="replace")


def _to_float(match: Optional[re.Match]) -> float:
    if not match:
        return 0.0
    try:
        return float(match.group(1))
    except ValueError:
        return 0.0


def parse_progress_line(line: str) -> Optional[StreamStats]:
    """Extracts progress metrics from one ffmpeg stderr line.

    Returns None unless the line carries a frame counter. Every other field
    defaults independently (N/A bitrate or speed parse as 0).
    """
    frame_match = FRAME_RE.search(line)
    if not frame_match:
        return None

    size_match = _SIZE_RE.search(line)
    time_match = _TIME_RE.search(line)
    return StreamStats(
        frame=int(frame_match.group(1)),
        fps=_to_float(_FPS_RE.search(line)),
        size=size_match.group(1) if size_match else "0kB",
        time=time_match.group(1) if time_match else "00:00:00.00",
        bitrate=_to_float(_BITRATE_RE.search(line)),
        speed=_to_float(_SPEED_RE.search(line)),
    )
