"""
Loopcast Encode Argument Builder — ffmpeg argv for one playlist item → one RTMP target.

Pure functions, no state. The argument order is significant: input options
must precede ``-i`` and the destination URL must be the final argument.

Per item the encoder:
  - reads the file at native rate and loops it forever at input level
  - re-encodes H.264 / yuv420p, scaled to the tier height (width keeps aspect)
  - caps the rate with maxrate = bitrate, bufsize = 2 × bitrate
  - forces a keyframe every 2 seconds (GOP = 2 × fps)
  - re-encodes audio to a fixed AAC stereo 44.1 kHz 128 kbps baseline
  - muxes FLV over RTMP with transport-level reconnects
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from app.models.models import Platform

# One canonical ingest table
PLATFORM_BASE_URLS: Dict[Platform, str] = {
    Platform.YOUTUBE: "rtmp://a.rtmp.youtube.com/live2",
    Platform.TWITCH: "rtmp://live.twitch.tv/app",
    Platform.FACEBOOK: "rtmps://live-api-s.facebook.com:443/rtmp",
}

RESOLUTION_HEIGHTS: Dict[str, int] = {
    "1080p": 1080,
    "720p": 720,
    "480p": 480,
    "360p": 360,
}

# Profile resolutions are stored as WxH
RESOLUTION_LABELS: Dict[str, str] = {
    "1920x1080": "1080p",
    "1280x720": "720p",
    "854x480": "480p",
    "640x360": "360p",
}

DEFAULT_QUALITY = "720p"

# Fixed audio baseline; the profile's audio_quality is not applied
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"
AUDIO_SAMPLE_RATE = 44100
AUDIO_CHANNELS = 2


@dataclass(frozen=True)
class EncodeQuality:
    quality: str = DEFAULT_QUALITY  # 1080p | 720p | 480p | 360p
    bitrate: str = "3000k"
    fps: int = 30


@dataclass(frozen=True)
class RtmpTarget:
    """A resolved destination plus the quality it should be encoded at."""
    output_url: str
    stream_key: str
    encode: EncodeQuality

    @property
    def destination(self) -> str:
        return f"{self.output_url.rstrip('/')}/{self.stream_key}"


# ── Destination ─────────────────────────────────────────────────────────

def platform_base_url(platform: Platform | str, custom_url: Optional[str], rtmp_port: int) -> str:
    """Ingest base URL for a platform; custom falls back to the local RTMP server."""
    platform = Platform(platform)
    if platform == Platform.CUSTOM:
        return custom_url or f"rtmp://localhost:{rtmp_port}/live"
    return PLATFORM_BASE_URLS[platform]


def resolve_destination(
    platform: Platform | str,
    stream_key: str,
    custom_url: Optional[str],
    rtmp_port: int,
) -> str:
    """Full ``<base>/<stream_key>`` URL handed to the encoder."""
    base = platform_base_url(platform, custom_url, rtmp_port)
    return f"{base.rstrip('/')}/{stream_key}"


# ── Quality ─────────────────────────────────────────────────────────────

def resolution_label(resolution: Optional[str]) -> str:
    """``1280x720`` → ``720p``; already-labelled or unknown values map sensibly."""
    if not resolution:
        return DEFAULT_QUALITY
    if resolution in RESOLUTION_HEIGHTS:
        return resolution
    return RESOLUTION_LABELS.get(resolution, DEFAULT_QUALITY)


def resolution_height(quality: str) -> int:
    return RESOLUTION_HEIGHTS.get(quality, RESOLUTION_HEIGHTS[DEFAULT_QUALITY])


def bitrate_kbps(bitrate: str | int) -> int:
    """``"3000k"`` / ``"3000"`` / ``3000`` → 3000."""
    if isinstance(bitrate, int):
        return bitrate
    digits = str(bitrate).strip().lower().rstrip("k")
    return int(float(digits))


# ── Argv ────────────────────────────────────────────────────────────────

def build_encoder_args(
    source_path: str,
    destination_url: str,
    encode: EncodeQuality,
    preset: str = "veryfast",
    tune: str = "zerolatency",
    reconnect_delay_max: int = 5,
) -> List[str]:
    """Arguments for the encoder binary (the binary itself is not included)."""
    kbps = bitrate_kbps(encode.bitrate)
    maxrate = f"{kbps}k"
    bufsize = f"{kbps * 2}k"

    return [
        "-stream_loop", "-1",
        "-re",
        "-i", source_path,
        "-c:v", "libx264",
        "-preset", preset,
        "-tune", tune,
        "-pix_fmt", "yuv420p",
        "-maxrate", maxrate,
        "-bufsize", bufsize,
        "-vf", f"scale=-2:{resolution_height(encode.quality)}",
        "-g", str(encode.fps * 2),
        "-r", str(encode.fps),
        "-c:a", AUDIO_CODEC,
        "-b:a", AUDIO_BITRATE,
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-ac", str(AUDIO_CHANNELS),
        "-f", "flv",
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", str(reconnect_delay_max),
        destination_url,
    ]
