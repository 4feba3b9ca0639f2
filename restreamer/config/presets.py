"""Known streaming platforms, their ingest defaults and recommended encodings."""

from dataclasses import dataclass
from typing import Dict, Literal

ResolutionName = Literal["1080p", "720p", "480p"]


@dataclass(frozen=True)
class PlatformPreset:
    id: str
    name: str
    default_url: str
    requires_rtmps: bool = False


@dataclass(frozen=True)
class PlatformEncodingPreset:
    bitrate: int  # kbps
    resolution: ResolutionName
    fps: int


PLATFORM_PRESETS: Dict[str, PlatformPreset] = {
    p.id: p
    for p in (
        PlatformPreset("twitch", "Twitch", "rtmp://live.twitch.tv/app/"),
        PlatformPreset("youtube", "YouTube", "rtmp://a.rtmp.youtube.com/live2/"),
        PlatformPreset("facebook", "Facebook", "rtmps://live-api-s.facebook.com:443/rtmp/", True),
        PlatformPreset("tiktok", "TikTok", ""),
        PlatformPreset("instagram", "Instagram", "rtmps://live-upload.instagram.com:443/rtmp/", True),
        PlatformPreset("kick", "Kick", "rtmps://fa723fc1b171.global-contribute.live-video.net:443/app/", True),
        PlatformPreset("x", "X (Twitter)", ""),
        PlatformPreset("rumble", "Rumble", ""),
        PlatformPreset("linkedin", "LinkedIn Live", "", True),
        PlatformPreset("trovo", "Trovo", "rtmp://livepush.trovo.live/live/"),
        PlatformPreset("bilibili", "Bilibili", "rtmp://live-push.bilivideo.com/live-bvc/"),
        PlatformPreset("soop", "SOOP", "rtmp://stream.sooplive.co.kr/app/"),
        PlatformPreset("mixcloud", "Mixcloud", "rtmp://rtmp.mixcloud.com/broadcast"),
        PlatformPreset("custom", "Custom RTMP", ""),
    )
}

PLATFORM_ENCODING_PRESETS: Dict[str, PlatformEncodingPreset] = {
    "twitch": PlatformEncodingPreset(6000, "1080p", 60),
    "youtube": PlatformEncodingPreset(6000, "1080p", 60),
    "facebook": PlatformEncodingPreset(4000, "1080p", 30),
    "tiktok": PlatformEncodingPreset(4000, "1080p", 30),
    "instagram": PlatformEncodingPreset(3500, "720p", 30),
    "kick": PlatformEncodingPreset(6000, "1080p", 60),
    "x": PlatformEncodingPreset(4000, "1080p", 30),
    "linkedin": PlatformEncodingPreset(4000, "720p", 30),
}

# Scale filter dimensions, W:H
RESOLUTION_MAP: Dict[str, str] = {
    "1080p": "1920:1080",
    "720p": "1280:720",
    "480p": "854:480",
}

RTMP_APP_NAME = "live"
RTMP_STREAM_KEY = "stream"
