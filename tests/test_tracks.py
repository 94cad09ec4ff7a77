"""Tests for local track control and screen-share substitution."""

import fractions
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from av import AudioFrame

from fakes import FakeConnection
from peer_call.exceptions import MediaAcquisitionFailure
from peer_call.media import SyntheticMediaProvider
from peer_call.tracks import LocalTrack, TrackController, TrackSource


class NoisyAudioTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        frame = AudioFrame(format="s16", layout="mono", samples=960)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.pts = 960
        frame.sample_rate = 48000
        frame.time_base = fractions.Fraction(1, 48000)
        return frame


async def started(audio=True, video=True):
    provider = SyntheticMediaProvider()
    controller = TrackController(provider, audio=audio, video=video)
    streams = []
    controller.on_local_stream = streams.append
    await controller.start()
    return controller, provider, streams


class TestLocalTrack:
    @pytest.mark.asyncio
    async def test_enabled_passes_frames_through(self):
        source = VideoStreamTrack()
        track = LocalTrack(source, source=TrackSource.CAMERA)

        frame = await track.recv()

        assert track.kind == "video"
        assert frame.width == 640

    @pytest.mark.asyncio
    async def test_disabled_video_is_black(self):
        track = LocalTrack(VideoStreamTrack())
        track.enabled = False

        frame = await track.recv()

        assert (frame.width, frame.height) == (640, 480)
        assert frame.to_ndarray(format="rgb24").max() == 0

    @pytest.mark.asyncio
    async def test_disabled_audio_is_silent(self):
        track = LocalTrack(NoisyAudioTrack())
        track.enabled = False

        frame = await track.recv()

        assert frame.samples == 960
        assert frame.pts == 960
        assert not any(bytes(frame.planes[0]))

    def test_stop_stops_source(self):
        source = VideoStreamTrack()
        track = LocalTrack(source)

        track.stop()

        assert track.readyState == "ended"
        assert source.readyState == "ended"


class TestStart:
    @pytest.mark.asyncio
    async def test_acquires_and_publishes(self):
        controller, provider, streams = await started()

        assert controller.audio_track.kind == "audio"
        assert controller.camera_track.source is TrackSource.CAMERA
        assert not controller.muted
        assert not controller.video_off
        assert len(streams) == 1
        assert streams[0].video is controller.camera_track

    @pytest.mark.asyncio
    async def test_audio_only(self):
        controller, provider, streams = await started(video=False)

        assert controller.camera_track is None
        assert controller.video_off
        assert len(provider.tracks) == 1

    @pytest.mark.asyncio
    async def test_acquisition_failure_propagates(self):
        provider = MagicMock()
        provider.get_user_media = AsyncMock(
            side_effect=MediaAcquisitionFailure("camera", "permission denied")
        )
        controller = TrackController(provider)

        with pytest.raises(MediaAcquisitionFailure):
            await controller.start()
        assert controller.audio_track is None

    @pytest.mark.asyncio
    async def test_stopped_while_acquiring(self):
        provider = SyntheticMediaProvider()
        controller = TrackController(provider)
        controller.stop()

        await controller.start()

        assert all(t.readyState == "ended" for t in provider.tracks)
        assert controller.audio_track is None

    @pytest.mark.asyncio
    async def test_attach_adds_one_track_per_kind(self):
        controller, _, _ = await started()
        pc = FakeConnection()

        controller.attach(pc)

        assert [s.track for s in pc.senders] == [controller.audio_track, controller.camera_track]
        assert controller.video_sender is pc.senders[1]


class TestMute:
    @pytest.mark.asyncio
    async def test_mute_only_flips_local_state(self):
        controller, _, _ = await started()
        pc = FakeConnection()
        controller.attach(pc)
        renegotiate = MagicMock()
        controller.on_renegotiation_needed = renegotiate

        controller.set_audio_enabled(False)
        controller.set_video_enabled(False)

        assert controller.muted
        assert controller.video_off
        assert not controller.audio_track.enabled
        assert pc.senders[1].track is controller.camera_track
        renegotiate.assert_not_called()

        controller.set_audio_enabled(True)
        assert not controller.muted


class TestScreenShare:
    @pytest.mark.asyncio
    async def test_share_replaces_camera_on_sender(self):
        controller, provider, streams = await started()
        pc = FakeConnection()
        controller.attach(pc)
        sharing = []
        controller.on_sharing_changed = sharing.append

        await controller.start_screen_share()

        assert controller.sharing
        assert controller.screen_track.source is TrackSource.SCREEN
        assert pc.senders[1].track is controller.screen_track
        assert len(pc.senders) == 2
        assert sharing == [True]
        assert streams[-1].video is controller.screen_track

    @pytest.mark.asyncio
    async def test_stop_share_restores_camera(self):
        controller, provider, _ = await started()
        pc = FakeConnection()
        controller.attach(pc)
        await controller.start_screen_share()
        screen = controller.screen_track

        controller.stop_screen_share()
        controller.stop_screen_share()

        assert not controller.sharing
        assert pc.senders[1].track is controller.camera_track
        assert screen.readyState == "ended"
        assert provider.tracks[-1].readyState == "ended"

    @pytest.mark.asyncio
    async def test_capture_ended_externally(self):
        controller, provider, _ = await started()
        pc = FakeConnection()
        controller.attach(pc)
        sharing = []
        controller.on_sharing_changed = sharing.append
        await controller.start_screen_share()

        # the user stops sharing from the operating system
        provider.tracks[-1].stop()

        assert not controller.sharing
        assert pc.senders[1].track is controller.camera_track
        assert sharing == [True, False]

    @pytest.mark.asyncio
    async def test_share_twice_is_noop(self):
        controller, provider, _ = await started()
        controller.attach(FakeConnection())
        await controller.start_screen_share()
        count = len(provider.tracks)

        await controller.start_screen_share()

        assert len(provider.tracks) == count

    @pytest.mark.asyncio
    async def test_share_in_audio_only_call_needs_renegotiation(self):
        controller, _, _ = await started(video=False)
        pc = FakeConnection()
        controller.attach(pc)
        renegotiate = MagicMock()
        controller.on_renegotiation_needed = renegotiate

        await controller.start_screen_share()

        assert len(pc.senders) == 2
        assert pc.senders[1].track is controller.screen_track
        renegotiate.assert_called_once()

        controller.stop_screen_share()
        assert pc.senders[1].track is None

    @pytest.mark.asyncio
    async def test_display_failure_leaves_camera(self):
        controller, _, _ = await started()
        pc = FakeConnection()
        controller.attach(pc)
        controller.provider.get_display_media = AsyncMock(
            side_effect=MediaAcquisitionFailure("display", "no screen")
        )

        with pytest.raises(MediaAcquisitionFailure):
            await controller.start_screen_share()

        assert not controller.sharing
        assert pc.senders[1].track is controller.camera_track

    @pytest.mark.asyncio
    async def test_reattach_after_share_uses_screen(self):
        """A replacement connection gets the track currently being sent."""
        controller, _, _ = await started()
        controller.attach(FakeConnection())
        await controller.start_screen_share()
        pc = FakeConnection()

        controller.attach(pc)

        assert pc.senders[1].track is controller.screen_track

    @pytest.mark.asyncio
    async def test_failed_sender_swap_releases_display(self):
        """Test that a share which cannot reach the connection is rolled back."""
        controller, provider, _ = await started(video=False)
        pc = FakeConnection()
        controller.attach(pc)
        await pc.close()
        sharing = []
        controller.on_sharing_changed = sharing.append

        with pytest.raises(InvalidStateError):
            await controller.start_screen_share()

        assert not controller.sharing
        assert controller.screen_track is None
        assert provider.tracks[-1].readyState == "ended"
        assert sharing == []

    @pytest.mark.asyncio
    async def test_share_after_detach(self):
        """Test sharing while no peer is connected, then attaching a new one."""
        controller, _, _ = await started(video=False)
        old = FakeConnection()
        controller.attach(old)
        await old.close()
        renegotiate = MagicMock()
        controller.on_renegotiation_needed = renegotiate

        controller.detach(old)
        await controller.start_screen_share()

        assert controller.sharing
        assert len(old.senders) == 1
        renegotiate.assert_not_called()

        pc = FakeConnection()
        controller.attach(pc)
        assert pc.senders[1].track is controller.screen_track
        assert controller.video_sender is pc.senders[1]

    @pytest.mark.asyncio
    async def test_detach_keeps_newer_connection(self):
        controller, _, _ = await started()
        old = FakeConnection()
        controller.attach(old)
        pc = FakeConnection()
        controller.attach(pc)

        controller.detach(old)

        assert controller.video_sender is pc.senders[1]


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_releases_everything_once(self):
        controller, provider, _ = await started()
        controller.attach(FakeConnection())
        await controller.start_screen_share()
        sharing = []
        controller.on_sharing_changed = sharing.append

        controller.stop()
        controller.stop()

        assert controller.stopped
        assert all(t.readyState == "ended" for t in provider.tracks)
        assert controller.audio_track.readyState == "ended"
        assert sharing == []

    @pytest.mark.asyncio
    async def test_share_after_stop_rejected(self):
        controller, _, _ = await started()
        controller.stop()

        with pytest.raises(RuntimeError):
            await controller.start_screen_share()
