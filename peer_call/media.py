"""Local media capture.

A ``MediaProvider`` is the only way the call layer obtains local media. The
default ``DeviceMediaProvider`` opens the camera, microphone and screen
through FFmpeg input devices using aiortc's ``MediaPlayer``; the
``SyntheticMediaProvider`` produces aiortc's silence / test-pattern tracks and
needs no hardware.
"""

import asyncio
import logging
import os
import platform
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from peer_call.config import MediaConfig
from peer_call.exceptions import MediaAcquisitionFailure

logger = logging.getLogger(__name__)


class MediaProvider(ABC):
    """Source of local capture tracks."""

    @abstractmethod
    async def get_user_media(
        self, audio: bool = True, video: bool = True
    ) -> Tuple[Optional[MediaStreamTrack], Optional[MediaStreamTrack]]:
        """Open the microphone and camera.

        Returns:
            ``(audio_track, video_track)``; a track is None when not requested.

        Raises:
            MediaAcquisitionFailure: If a requested device cannot be opened.
        """

    @abstractmethod
    async def get_display_media(self) -> MediaStreamTrack:
        """Open a screen capture video track.

        The returned track emits ``"ended"`` when the capture stops on its own.

        Raises:
            MediaAcquisitionFailure: If screen capture is unavailable.
        """


# FFmpeg input devices per platform: (camera format, default camera,
# microphone format, default microphone, screen format, default screen).
_PLATFORM_DEVICES = {
    "Darwin": ("avfoundation", "default:none", "avfoundation", "none:default", "avfoundation", "Capture screen 0"),
    "Windows": ("dshow", "video=Integrated Camera", "dshow", "audio=Microphone", "gdigrab", "desktop"),
    "Linux": ("v4l2", "/dev/video0", "pulse", "default", "x11grab", None),
}


def _close_player(player: MediaPlayer) -> None:
    """Stop whatever streams an unusable player did open."""
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


class DeviceMediaProvider(MediaProvider):
    """Capture from local devices with FFmpeg via ``MediaPlayer``."""

    def __init__(self, config: Optional[MediaConfig] = None):
        self.config = config or MediaConfig()
        self.system = platform.system()
        if self.system not in _PLATFORM_DEVICES:
            logger.warning(f"Unknown platform {self.system}, assuming Linux devices")
            self.system = "Linux"

    def _video_options(self) -> Dict[str, str]:
        return {
            "video_size": self.config.video_size,
            "framerate": str(self.config.framerate),
        }

    async def _open(self, kind: str, file: str, format: str, options=None) -> MediaPlayer:
        logger.debug(f"Opening {kind} device {file} ({format})")
        try:
            player = await asyncio.to_thread(
                MediaPlayer, file, format=format, options=options
            )
        except (FFmpegError, OSError) as e:
            raise MediaAcquisitionFailure(kind, str(e)) from e
        return player

    async def get_user_media(self, audio=True, video=True):
        camera_format, camera, mic_format, mic, _, _ = _PLATFORM_DEVICES[self.system]

        audio_track = None
        video_track = None
        if audio:
            player = await self._open(
                "microphone", self.config.microphone or mic, mic_format
            )
            audio_track = player.audio
            if audio_track is None:
                _close_player(player)
                raise MediaAcquisitionFailure("microphone", "device has no audio stream")
        if video:
            try:
                player = await self._open(
                    "camera", self.config.camera or camera, camera_format,
                    options=self._video_options(),
                )
            except MediaAcquisitionFailure:
                if audio_track is not None:
                    audio_track.stop()
                raise
            video_track = player.video
            if video_track is None:
                _close_player(player)
                if audio_track is not None:
                    audio_track.stop()
                raise MediaAcquisitionFailure("camera", "device has no video stream")

        logger.info(
            f"Acquired local media (audio={audio_track is not None}, "
            f"video={video_track is not None})"
        )
        return audio_track, video_track

    async def get_display_media(self):
        _, _, _, _, screen_format, screen = _PLATFORM_DEVICES[self.system]
        if screen is None:
            screen = os.environ.get("DISPLAY", ":0")
        player = await self._open(
            "display", screen, screen_format, options=self._video_options()
        )
        if player.video is None:
            _close_player(player)
            raise MediaAcquisitionFailure("display", "capture has no video stream")
        logger.info(f"Acquired screen capture from {screen}")
        return player.video


class SyntheticMediaProvider(MediaProvider):
    """Silence and generated frames, for tests and hardware-less machines.

    Every track handed out is remembered in ``tracks`` so callers can end a
    capture from outside, the way a user stops sharing from the OS.
    """

    def __init__(self):
        self.tracks: List[MediaStreamTrack] = []

    async def get_user_media(self, audio=True, video=True):
        audio_track = AudioStreamTrack() if audio else None
        video_track = VideoStreamTrack() if video else None
        self.tracks.extend(t for t in (audio_track, video_track) if t is not None)
        return audio_track, video_track

    async def get_display_media(self):
        track = VideoStreamTrack()
        self.tracks.append(track)
        return track
