"""Media encoder adapter.

The encoder is a black box invoked once per rendition profile. FFmpegEncoder
runs ffmpeg as an asyncio subprocess so many renditions can encode at once
without blocking the event loop, and kills the process when the surrounding
task is cancelled.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

from mediaflow.core.config import settings
from mediaflow.modules.transcoding.profiles import RenditionProfile

logger = logging.getLogger(__name__)


class EncodingError(Exception):
    """Raised when the encoder rejects the input or exits with an error."""


@dataclass
class EncodeResult:
    """Output of one successful encode."""
    output_path: str
    file_size: int = 0


class MediaEncoder(ABC):
    """Encodes a local source file into one rendition."""

    @abstractmethod
    async def encode(
        self,
        source_path: str,
        profile: RenditionProfile,
        output_path: str,
    ) -> EncodeResult:
        """Encode source_path into output_path.

        Raises:
            EncodingError: If encoding fails
        """


class FFmpegEncoder(MediaEncoder):
    """H.264/AAC encoder running the ffmpeg binary."""

    def __init__(self, ffmpeg_path: str = settings.FFMPEG_PATH, keyframe_interval: int = 2):
        self.ffmpeg_path = ffmpeg_path
        self.keyframe_interval = keyframe_interval

    def build_command(
        self,
        source_path: str,
        profile: RenditionProfile,
        output_path: str,
    ) -> list[str]:
        """Build the ffmpeg argument list for a profile."""
        width, height = profile.width, profile.height
        bitrate = profile.video_bitrate

        return [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-nostdin",
            "-i", source_path,
            # Video settings
            "-c:v", profile.video_codec,
            "-preset", profile.preset,
            "-profile:v", profile.h264_profile,
            "-level", profile.h264_level,
            "-b:v", str(bitrate),
            "-maxrate", str(int(bitrate * 1.5)),
            "-bufsize", str(int(bitrate * 2)),
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-g", str(self.keyframe_interval * 30),  # Keyframe interval in frames (assuming 30fps)
            # Audio settings
            "-c:a", profile.audio_codec,
            "-b:a", str(profile.audio_bitrate),
            "-ar", "48000",
            "-ac", "2",
            # Output format
            "-movflags", "+faststart",
            "-f", "mp4",
            output_path,
        ]

    async def encode(
        self,
        source_path: str,
        profile: RenditionProfile,
        output_path: str,
    ) -> EncodeResult:
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = self.build_command(source_path, profile, output_path)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodingError(f"Could not start encoder for {profile.name}: {e}") from e

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            logger.info(f"Encoder for {profile.name} killed after cancellation")
            raise

        if process.returncode != 0:
            tail = stderr.decode(errors="replace").strip().splitlines()[-5:]
            raise EncodingError(
                f"Encoder exited with code {process.returncode} for {profile.name}: "
                + " | ".join(tail)
            )

        return EncodeResult(output_path=output_path, file_size=os.path.getsize(output_path))
