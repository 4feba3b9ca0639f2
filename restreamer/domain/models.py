from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

class DestinationHealth(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LIVE = "live"
    RETRYING = "retrying"
    ERROR = "error"  # Terminal until the next explicit start

class DestinationStatus(BaseModel):
    id: str
    health: DestinationHealth
    bitrate: Optional[float] = None  # kbps
    fps: Optional[float] = None
    uptime: Optional[int] = None  # seconds since first telemetry line
    cpu_percent: Optional[int] = None
    error: Optional[str] = None
    retry_count: int = 0

class IngestStatus(BaseModel):
    connected: bool = False
    client_ip: Optional[str] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None  # kbps
    fps: Optional[float] = None
    resolution: Optional[str] = None
    audio_codec: Optional[str] = None
    audio_channels: Optional[int] = None
    sample_rate: Optional[int] = None
    uptime: Optional[int] = None
    preview_url: Optional[str] = None

class AvailableEncoders(BaseModel):
    hardware: List[str] = Field(default_factory=list)
    software: List[str] = Field(default_factory=lambda: ["libx264"])

class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None

@dataclass(frozen=True)
class StreamStats:
    """One ffmpeg progress line."""
    frame: int
    fps: float
    size: str
    time: str
    bitrate: float  # kbps
    speed: float
