"""Property tests for rendition profiles and the ffmpeg encoder adapter.

**Feature: mediaflow, Property: Encoder Command Matches Profile**
"""

import shutil

import pytest
from hypothesis import given, settings, strategies as st

from mediaflow.modules.transcoding.ffmpeg import EncodingError, FFmpegEncoder
from mediaflow.modules.transcoding.profiles import (
    PREDEFINED_PROFILES,
    UnknownProfileError,
    resolve_profiles,
)

profile_strategy = st.sampled_from(list(PREDEFINED_PROFILES.values()))


class TestEncoderCommand:
    """**Feature: mediaflow, Property: Encoder Command Matches Profile**"""

    @given(profile=profile_strategy)
    @settings(max_examples=50)
    def test_command_carries_profile_settings(self, profile):
        cmd = FFmpegEncoder("ffmpeg").build_command("in.mp4", profile, "out/720p.mp4")

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "in.mp4"
        assert cmd[-1] == "out/720p.mp4"
        assert cmd[cmd.index("-b:v") + 1] == str(profile.video_bitrate)
        assert cmd[cmd.index("-b:a") + 1] == str(profile.audio_bitrate)
        assert cmd[cmd.index("-profile:v") + 1] == profile.h264_profile
        assert cmd[cmd.index("-level") + 1] == profile.h264_level
        assert f"scale={profile.width}:{profile.height}" in cmd[cmd.index("-vf") + 1]
        assert int(cmd[cmd.index("-maxrate") + 1]) > profile.video_bitrate

    @pytest.mark.asyncio
    async def test_missing_binary_raises_encoding_error(self, tmp_path):
        encoder = FFmpegEncoder(str(tmp_path / "no-such-ffmpeg"))

        with pytest.raises(EncodingError, match="Could not start encoder"):
            await encoder.encode("in.mp4", PREDEFINED_PROFILES["480p"], str(tmp_path / "out.mp4"))

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises_encoding_error(self, tmp_path):
        false_binary = shutil.which("false")
        if false_binary is None:
            pytest.skip("false binary not available")

        encoder = FFmpegEncoder(false_binary)

        with pytest.raises(EncodingError, match="exited with code 1"):
            await encoder.encode("in.mp4", PREDEFINED_PROFILES["480p"], str(tmp_path / "out.mp4"))


class TestProfileResolution:
    """Configured profile names resolve to the predefined ladder."""

    @given(names=st.lists(st.sampled_from(sorted(PREDEFINED_PROFILES)), min_size=1, max_size=8))
    @settings(max_examples=50)
    def test_resolution_keeps_order_without_duplicates(self, names):
        profiles = resolve_profiles(names)

        expected = list(dict.fromkeys(names))
        assert [p.name for p in profiles] == expected

    def test_names_are_case_insensitive(self):
        assert [p.name for p in resolve_profiles([" 720P", "480p"])] == ["720p", "480p"]

    def test_unknown_profile_rejected(self):
        with pytest.raises(UnknownProfileError):
            resolve_profiles(["480p", "8k"])

    def test_empty_profile_list_rejected(self):
        with pytest.raises(UnknownProfileError):
            resolve_profiles([])
