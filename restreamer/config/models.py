import time
from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator
from restreamer.config.presets import PLATFORM_PRESETS

COPY_ENCODER = "copy"
SOFTWARE_ENCODER = "libx264"
HARDWARE_ENCODERS = ("h264_videotoolbox", "h264_nvenc", "h264_qsv", "h264_amf")

class RestreamSettings(BaseModel):
    """Global settings read by the supervisor on every spawn."""
    rtmp_port: int = Field(default=1935, gt=0, lt=65536)
    ffmpeg_path: str = ""
    buffer_duration: float = Field(default=0.0, ge=0.0)  # seconds, 0 disables buffering flags
    auto_reconnect: bool = True
    max_retries: int = Field(default=5, ge=0)

class EncodingSettings(BaseModel):
    encoder: str = COPY_ENCODER
    bitrate: Optional[int] = Field(default=None, gt=0)  # kbps
    rate_control: Literal["cbr", "vbr"] = "cbr"
    resolution: Literal["source", "1080p", "720p", "480p"] = "source"
    fps: Union[int, Literal["source"]] = "source"
    keyframe_interval: Optional[int] = Field(default=None, ge=0)  # seconds
    x264_preset: Optional[str] = None  # Only meaningful for libx264

    @field_validator("encoder")
    @classmethod
    def validate_encoder(cls, v: str) -> str:
        allowed = {COPY_ENCODER, SOFTWARE_ENCODER, *HARDWARE_ENCODERS}
        if v not in allowed:
            raise ValueError(f"Unsupported encoder: {v}. Use one of {sorted(allowed)}")
        return v

    @field_validator("fps")
    @classmethod
    def validate_fps(cls, v):
        if isinstance(v, int) and v <= 0:
            raise ValueError("fps must be > 0 or 'source'")
        return v

    @property
    def is_passthrough(self) -> bool:
        return self.encoder == COPY_ENCODER

class Destination(BaseModel):
    id: str = Field(min_length=1)
    platform: str = "custom"
    name: str = ""
    url: str = ""  # protocol://host/app-path, never contains the stream key
    enabled: bool = True
    created_at: float = Field(default_factory=time.time)
    encoding: Optional[EncodingSettings] = None

    @field_validator("platform")
    @classmethod
    def validate_platform(cls, v: str) -> str:
        if v not in PLATFORM_PRESETS:
            raise ValueError(f"Unknown platform: {v}. Use one of {sorted(PLATFORM_PRESETS)}")
        return v

    @model_validator(mode="after")
    def apply_platform_defaults(self):
        preset = PLATFORM_PRESETS[self.platform]
        if not self.name:
            self.name = preset.name
        if not self.url:
            self.url = preset.default_url
        return self

class UiConfig(BaseModel):
    """Dashboard refresh configuration."""
    poll_interval_ms: int = Field(default=2000, ge=100)
    cpu_poll_interval_s: float = Field(default=2.0, ge=0.5)

class AppConfig(BaseModel):
    settings: RestreamSettings = Field(default_factory=RestreamSettings)
    destinations: List[Destination] = Field(default_factory=list)
    stream_keys: Dict[str, str] = Field(default_factory=dict)
    ui: UiConfig = Field(default_factory=UiConfig)

    @model_validator(mode="after")
    def validate_unique_ids(self):
        seen = set()
        for destination in self.destinations:
            if destination.id in seen:
                raise ValueError(f"Duplicate destination id: {destination.id}")
            seen.add(destination.id)
        return self

    def enabled_destinations(self) -> List[Destination]:
        return [d for d in self.destinations if d.enabled]
