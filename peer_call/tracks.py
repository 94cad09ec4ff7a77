"""Local track management.

The controller owns the local audio track and the single outgoing video track.
Muting only flips a local switch: a disabled track keeps producing frames with
the source's timing, but silent or black, so the remote side sees silence or a
blank picture rather than a removed track.

Screen sharing swaps the track on the already attached video sender with
``RTCRtpSender.replaceTrack``. The sender stays in place, so no new
offer/answer round trip is needed. Only a structural change (a video sender
has to be added because the call started without a camera) asks for
renegotiation.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from aiortc import MediaStreamTrack, RTCPeerConnection
from aiortc.contrib.media import MediaRelay
from av import AudioFrame, VideoFrame

from peer_call.media import MediaProvider

logger = logging.getLogger(__name__)


class TrackSource(enum.Enum):
    CAMERA = "camera"
    SCREEN = "screen"


def _silence(frame: AudioFrame) -> AudioFrame:
    silent = AudioFrame(
        format=frame.format.name, layout=frame.layout.name, samples=frame.samples
    )
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


def _blank(frame: VideoFrame) -> VideoFrame:
    black = VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    black.pts = frame.pts
    black.time_base = frame.time_base
    return black


class LocalTrack(MediaStreamTrack):
    """A capture track with a local ``enabled`` switch.

    Args:
        track: Track to read frames from.
        source: For video, whether the frames come from the camera or the screen.
    """

    def __init__(self, track: MediaStreamTrack, source: Optional[TrackSource] = None):
        super().__init__()
        self.kind = track.kind
        self.track = track
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.track.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _blank(frame)

    def stop(self):
        super().stop()
        self.track.stop()


@dataclass(frozen=True)
class LocalStream:
    """Handle on the local tracks, for a local preview."""

    audio: Optional[LocalTrack]
    video: Optional[LocalTrack]


class TrackController:
    """Owns the local track set and the outgoing video sender.

    Attributes:
        audio_track: Microphone track, None when audio was not requested.
        camera_track: Camera track, None for audio-only calls.
        screen_track: Screen capture track while sharing.
        on_local_stream: Called with a new ``LocalStream`` whenever the local
            preview changes.
        on_sharing_changed: Called with the new sharing flag.
        on_renegotiation_needed: Called when a sender had to be added to an
            already attached connection.
    """

    def __init__(self, provider: MediaProvider, audio: bool = True, video: bool = True):
        self.provider = provider
        self.want_audio = audio
        self.want_video = video

        self.audio_track: Optional[LocalTrack] = None
        self.camera_track: Optional[LocalTrack] = None
        self.screen_track: Optional[LocalTrack] = None

        self._relay = MediaRelay()
        self._captures: List[MediaStreamTrack] = []
        self._display_capture: Optional[MediaStreamTrack] = None
        self._connection: Optional[RTCPeerConnection] = None
        self._video_sender = None
        self._stopped = False

        self.on_local_stream: Optional[Callable[[LocalStream], None]] = None
        self.on_sharing_changed: Optional[Callable[[bool], None]] = None
        self.on_renegotiation_needed: Optional[Callable[[], None]] = None

    @property
    def muted(self) -> bool:
        return self.audio_track is None or not self.audio_track.enabled

    @property
    def video_off(self) -> bool:
        return self.camera_track is None or not self.camera_track.enabled

    @property
    def sharing(self) -> bool:
        return self.screen_track is not None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def video_track(self) -> Optional[LocalTrack]:
        """The track the video sender is currently fed from."""
        if self.screen_track is not None:
            return self.screen_track
        return self.camera_track

    @property
    def video_sender(self):
        return self._video_sender

    async def start(self) -> None:
        """Acquire the microphone and camera.

        Raises:
            MediaAcquisitionFailure: If a device cannot be opened.
        """
        audio, video = await self.provider.get_user_media(
            audio=self.want_audio, video=self.want_video
        )
        captures = [t for t in (audio, video) if t is not None]
        if self._stopped:
            # stop() ran while the devices were opening
            for capture in captures:
                capture.stop()
            return

        self._captures.extend(captures)
        if audio is not None:
            self.audio_track = LocalTrack(self._relay.subscribe(audio, buffered=False))
        if video is not None:
            self.camera_track = LocalTrack(
                self._relay.subscribe(video, buffered=False), source=TrackSource.CAMERA
            )
        self._publish()

    def attach(self, connection: RTCPeerConnection) -> None:
        """Add the local tracks to a (new) peer connection."""
        self._connection = connection
        if self.audio_track is not None:
            connection.addTrack(self.audio_track)
        video = self.video_track
        self._video_sender = connection.addTrack(video) if video is not None else None
        logger.debug(
            f"Attached local tracks (audio={self.audio_track is not None}, "
            f"video={video.source.value if video is not None else None})"
        )

    def detach(self, connection: Optional[RTCPeerConnection] = None) -> None:
        """Forget the peer connection, e.g. after the remote peer left.

        With ``connection`` given, only that connection is forgotten; a newer
        one attached meanwhile is kept.
        """
        if connection is not None and connection is not self._connection:
            return
        self._connection = None
        self._video_sender = None

    def set_audio_enabled(self, enabled: bool) -> None:
        if self.audio_track is not None:
            self.audio_track.enabled = enabled
            logger.info(f"Microphone {'unmuted' if enabled else 'muted'}")

    def set_video_enabled(self, enabled: bool) -> None:
        if self.camera_track is not None:
            self.camera_track.enabled = enabled
            logger.info(f"Camera {'enabled' if enabled else 'disabled'}")

    async def start_screen_share(self) -> None:
        """Start sharing the screen in place of the camera.

        Raises:
            MediaAcquisitionFailure: If screen capture is unavailable.
            RuntimeError: If the controller was stopped.
        """
        if self._stopped:
            raise RuntimeError("Track controller is stopped")
        if self.sharing:
            return

        display = await self.provider.get_display_media()
        if self._stopped or self.sharing:
            display.stop()
            return

        screen = LocalTrack(
            self._relay.subscribe(display, buffered=False), source=TrackSource.SCREEN
        )
        try:
            self._substitute(screen)
        except Exception:
            screen.stop()
            display.stop()
            raise

        self._display_capture = display
        self.screen_track = screen
        # the capture can be ended from outside, e.g. from the OS sharing UI
        display.on("ended", self.stop_screen_share)
        logger.info("Screen sharing started")
        self._notify_sharing()

    def stop_screen_share(self) -> None:
        """Go back to the camera. Does nothing when not sharing."""
        if self.screen_track is None:
            return

        screen, display = self.screen_track, self._display_capture
        self.screen_track = None
        self._display_capture = None

        self._substitute(self.camera_track)
        screen.stop()
        display.stop()
        logger.info("Screen sharing stopped")
        if not self._stopped:
            self._notify_sharing()

    def _substitute(self, track: Optional[LocalTrack]) -> None:
        if self._video_sender is not None:
            self._video_sender.replaceTrack(track)
        elif track is not None and self._connection is not None:
            self._video_sender = self._connection.addTrack(track)
            logger.info("Added a video sender, renegotiation needed")
            if self.on_renegotiation_needed:
                self.on_renegotiation_needed()

    def stop(self) -> None:
        """Stop every local track. Safe to call any number of times."""
        if self._stopped:
            return
        self._stopped = True

        self.stop_screen_share()
        for track in (self.audio_track, self.camera_track):
            if track is not None:
                track.stop()
        for capture in self._captures:
            capture.stop()
        self._captures = []
        self.detach()
        logger.info("Local tracks stopped")

    def _publish(self):
        if self.on_local_stream:
            self.on_local_stream(LocalStream(audio=self.audio_track, video=self.video_track))

    def _notify_sharing(self):
        self._publish()
        if self.on_sharing_changed:
            self.on_sharing_changed(self.sharing)
