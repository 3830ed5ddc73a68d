"""Rendition profiles.

Each profile is one rung of the adaptive-bitrate ladder produced for every
uploaded video.
"""

from dataclasses import dataclass
from typing import Iterable


class UnknownProfileError(ValueError):
    """Raised when configuration names a profile that is not defined."""


@dataclass(frozen=True)
class RenditionProfile:
    """Encoding settings for one rendition."""
    name: str
    width: int
    height: int
    video_bitrate: int  # bps
    audio_bitrate: int = 128000  # bps
    h264_profile: str = "main"
    h264_level: str = "3.1"
    preset: str = "fast"
    video_codec: str = "libx264"
    audio_codec: str = "aac"

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


PREDEFINED_PROFILES: dict[str, RenditionProfile] = {
    "480p": RenditionProfile(
        name="480p",
        width=854,
        height=480,
        video_bitrate=1_000_000,
        h264_profile="main",
        h264_level="3.1",
    ),
    "720p": RenditionProfile(
        name="720p",
        width=1280,
        height=720,
        video_bitrate=2_500_000,
        h264_profile="high",
        h264_level="4.0",
    ),
    "1080p": RenditionProfile(
        name="1080p",
        width=1920,
        height=1080,
        video_bitrate=5_000_000,
        h264_profile="high",
        h264_level="4.2",
    ),
    "4k": RenditionProfile(
        name="4k",
        width=3840,
        height=2160,
        video_bitrate=15_000_000,
        h264_profile="high",
        h264_level="5.1",
        preset="slow",
    ),
}


def resolve_profiles(names: Iterable[str]) -> list[RenditionProfile]:
    """Resolve configured profile names, keeping order and dropping duplicates.

    Raises:
        UnknownProfileError: If a name is not a predefined profile
    """
    profiles = []
    seen = set()
    for name in names:
        key = name.strip().lower()
        if key in seen:
            continue
        if key not in PREDEFINED_PROFILES:
            raise UnknownProfileError(f"Unknown rendition profile: {name}")
        seen.add(key)
        profiles.append(PREDEFINED_PROFILES[key])

    if not profiles:
        raise UnknownProfileError("At least one rendition profile must be configured")
    return profiles
