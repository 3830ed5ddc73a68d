"""Property tests for manifest generation and output layout.

**Feature: mediaflow, Property: Manifest Lists Completed Renditions Only**
"""

import uuid

from hypothesis import given, settings, strategies as st

from mediaflow.modules.transcoding.manifest import (
    DEFAULT_TENANT,
    build_master_manifest,
    manifest_key,
    output_base_path,
    rendition_key,
)
from mediaflow.modules.transcoding.models import RenditionStatus, TranscodeRendition
from mediaflow.modules.transcoding.profiles import PREDEFINED_PROFILES

BASE = "T1/videos/V1/job"


def rendition(profile_name: str, status: RenditionStatus) -> TranscodeRendition:
    profile = PREDEFINED_PROFILES[profile_name]
    rendition_id = uuid.uuid4()
    return TranscodeRendition(
        id=rendition_id,
        job_id=uuid.uuid4(),
        profile_name=profile.name,
        resolution=profile.resolution,
        bitrate=profile.video_bitrate,
        status=status.value,
        output_path=rendition_key(BASE, rendition_id, profile.name),
    )


class TestMasterManifest:
    """**Feature: mediaflow, Property: Manifest Lists Completed Renditions Only**"""

    @given(
        statuses=st.dictionaries(
            st.sampled_from(sorted(PREDEFINED_PROFILES)),
            st.sampled_from(list(RenditionStatus)),
            min_size=1,
        )
    )
    @settings(max_examples=100)
    def test_only_completed_renditions_listed(self, statuses):
        renditions = [rendition(name, status) for name, status in statuses.items()]

        manifest = build_master_manifest(BASE, renditions)
        lines = manifest.splitlines()

        assert lines[0] == "#EXTM3U"
        listed = [line for line in lines if not line.startswith("#")]
        completed = [r for r in renditions if r.status == RenditionStatus.COMPLETED.value]
        assert len(listed) == len(completed)
        for line in listed:
            assert not line.startswith("/")
            assert not line.startswith(BASE)

        bandwidths = [
            int(line.split("BANDWIDTH=")[1].split(",")[0])
            for line in lines
            if line.startswith("#EXT-X-STREAM-INF")
        ]
        assert bandwidths == sorted(bandwidths)

    def test_playlist_entry_points_at_rendition(self):
        entry = rendition("720p", RenditionStatus.COMPLETED)

        manifest = build_master_manifest(BASE, [entry])

        assert "#EXT-X-STREAM-INF:BANDWIDTH=2500000,RESOLUTION=1280x720" in manifest
        assert f"720p/{entry.id}_720p.mp4" in manifest


class TestOutputLayout:
    """Every job writes under its own prefix."""

    @given(tenant=st.sampled_from(["", "T1", "acme"]), video=st.text(alphabet="abc123", min_size=1, max_size=8))
    @settings(max_examples=50)
    def test_prefix_namespaced_by_job(self, tenant: str, video: str):
        first, second = uuid.uuid4(), uuid.uuid4()

        a = output_base_path(tenant, video, first)
        b = output_base_path(tenant, video, second)

        assert a != b
        assert a.startswith(f"{tenant or DEFAULT_TENANT}/videos/{video}/")
        assert manifest_key(a, "manifest.m3u8") == f"{a}/manifest.m3u8"
