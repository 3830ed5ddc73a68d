"""HLS master manifest generation and object-store layout."""

import posixpath
import uuid
from typing import Iterable

from mediaflow.core.config import settings
from mediaflow.modules.transcoding.models import RenditionStatus, TranscodeRendition

DEFAULT_TENANT = "default"


def output_base_path(
    tenant_id: str,
    video_id: str,
    job_id: uuid.UUID,
    path_format: str = settings.OUTPUT_PATH_FORMAT,
) -> str:
    """Object-store prefix under which one job writes all its outputs."""
    return path_format.format(
        tenant_id=tenant_id or DEFAULT_TENANT,
        video_id=video_id,
        job_id=job_id,
    ).strip("/")


def rendition_key(base_path: str, rendition_id: uuid.UUID, profile_name: str) -> str:
    """Object-store key of one rendition file."""
    return posixpath.join(base_path, profile_name, f"{rendition_id}_{profile_name}.mp4")


def manifest_key(base_path: str, filename: str = settings.MANIFEST_FILENAME) -> str:
    """Object-store key of the master manifest."""
    return posixpath.join(base_path, filename)


def build_master_manifest(base_path: str, renditions: Iterable[TranscodeRendition]) -> str:
    """Build an HLS master playlist for the completed renditions.

    Renditions that are not Completed are never listed. Paths are relative
    to the manifest location.

    Args:
        base_path: Prefix the manifest is uploaded under
        renditions: Renditions of the job

    Returns:
        Playlist text
    """
    completed = sorted(
        (r for r in renditions if r.status == RenditionStatus.COMPLETED.value and r.output_path),
        key=lambda r: r.bitrate,
    )

    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rendition in completed:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.bitrate},RESOLUTION={rendition.resolution}"
        )
        lines.append(posixpath.relpath(rendition.output_path, base_path))

    return "\n".join(lines) + "\n"
