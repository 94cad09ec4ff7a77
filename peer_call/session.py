"""Call session: one room, one remote peer, one peer connection at a time.

``CallSession`` is what a UI talks to. It joins a room by opening the
signaling transport and the local media concurrently, feeds transport events
into the ``NegotiationEngine`` and exposes mute, camera and screen-share
toggles. Any fatal error (relay lost, connection failed) tears the call down
before it is reported through ``on_state_change``.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Coroutine, Dict, Optional, Set

from aiortc import MediaStreamTrack, RTCPeerConnection

from peer_call.config import Config, get_config
from peer_call.exceptions import (
    ConnectivityFailure,
    PeerCallError,
    SignalingTransportFailure,
)
from peer_call.media import DeviceMediaProvider, MediaProvider
from peer_call.negotiation import NegotiationEngine, NegotiationState
from peer_call.protocol import PeerJoined, PeerLeft, Signal, TransportClosed
from peer_call.signaling import SignalingTransport
from peer_call.tracks import LocalStream, TrackController

logger = logging.getLogger(__name__)


class CallState(enum.Enum):
    IDLE = "idle"
    JOINING = "joining"
    IN_CALL = "in-call"
    ENDED = "ended"


@dataclass(frozen=True)
class RemoteStream:
    """Handle on the tracks received from the remote peer."""

    peer_id: str
    audio: Optional[MediaStreamTrack]
    video: Optional[MediaStreamTrack]


class CallSession:
    """Two-party call in a room.

    Args:
        config: Configuration (signaling URL, ICE servers, media settings).
            Defaults to the global configuration.
        media_provider: Source of local media. Defaults to capture devices.
        server_url: Relay URL, overriding the configuration.
        audio: Whether to capture the microphone.
        video: Whether to capture the camera.

    Attributes:
        on_local_stream: Sink for the local preview stream.
        on_remote_stream: Sink for the remote stream; called with None when the
            remote peer goes away.
        on_state_change: Called with ``(state, error)`` on every call state
            change; ``error`` is set when a fatal error ended the call.
        on_sharing_changed: Called with the new screen-share flag.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        media_provider: Optional[MediaProvider] = None,
        server_url: Optional[str] = None,
        audio: bool = True,
        video: bool = True,
    ):
        self.config = config or get_config()
        self.media_provider = media_provider or DeviceMediaProvider(self.config.media)
        self.server_url = server_url or self.config.signaling_websocket
        self.audio = audio
        self.video = video

        self.state = CallState.IDLE
        self.error: Optional[BaseException] = None
        self.room: Optional[str] = None
        self.transport: Optional[SignalingTransport] = None
        self.tracks: Optional[TrackController] = None
        self.engine: Optional[NegotiationEngine] = None

        self._remote_tracks: Dict[str, MediaStreamTrack] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._teardown: Optional[asyncio.Future] = None

        self.on_local_stream: Optional[Callable[[Optional[LocalStream]], None]] = None
        self.on_remote_stream: Optional[Callable[[Optional[RemoteStream]], None]] = None
        self.on_state_change: Optional[
            Callable[[CallState, Optional[BaseException]], None]
        ] = None
        self.on_sharing_changed: Optional[Callable[[bool], None]] = None

    # ── Lifecycle ───────────────────────────────────────────────────────────

    @property
    def peer_id(self) -> Optional[str]:
        return self.transport.peer_id if self.transport is not None else None

    @property
    def remote_peer(self) -> Optional[str]:
        return self.engine.bound_peer if self.engine is not None else None

    @property
    def negotiation_state(self) -> NegotiationState:
        peer = self.remote_peer
        if peer is None:
            return NegotiationState.IDLE
        return self.engine.state(peer)

    async def join(self, room: str) -> None:
        """Join ``room`` and wait for the other participant.

        Raises:
            MediaAcquisitionFailure: Camera or microphone unavailable.
            SignalingTransportFailure: Relay unreachable.
            RuntimeError: If the session is already joining or in a call.
        """
        if self.state in (CallState.JOINING, CallState.IN_CALL):
            raise RuntimeError(f"Cannot join while {self.state.value}")

        self._reset()
        self.room = room
        self._set_state(CallState.JOINING)

        self.transport = SignalingTransport(self.server_url)
        self.tracks = TrackController(self.media_provider, audio=self.audio, video=self.video)
        self.tracks.on_local_stream = self._publish_local
        self.tracks.on_sharing_changed = self._sharing_changed
        self.tracks.on_renegotiation_needed = lambda: self._spawn(self._renegotiate())

        results = await asyncio.gather(
            self.transport.connect(room), self.tracks.start(), return_exceptions=True
        )
        if self._teardown is not None:
            # leave() was called while joining
            await self.leave()
            return
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.error(f"Could not join room '{room}': {errors[0]}")
            self.error = errors[0]
            await self.leave()
            raise errors[0]

        local_id = results[0]
        self.engine = NegotiationEngine(
            local_id=local_id,
            send=self.transport.send,
            connection_factory=self._create_connection,
        )
        self.engine.on_failure = self._connectivity_failed
        self.engine.on_remote_track = self._remote_track

        self._spawn(self._pump())
        self._set_state(CallState.IN_CALL)
        logger.info(f"In room '{room}' as {local_id}, waiting for the other participant")

    async def leave(self) -> None:
        """Leave the call and release everything. Safe to call any number of
        times, concurrently, or after a fatal error already ended the call."""
        if self._teardown is None:
            self._teardown = asyncio.ensure_future(self._release(asyncio.current_task()))
        await asyncio.shield(self._teardown)

    def _reset(self):
        self.error = None
        self.engine = None
        self._remote_tracks = {}
        self._tasks = set()
        self._teardown = None

    async def _release(self, caller: Optional[asyncio.Task] = None):
        # the task that started the teardown waits on it, the rest are cancelled
        for task in list(self._tasks):
            if task is not caller and not task.done():
                task.cancel()

        if self.engine is not None:
            await self.engine.close()
        if self.tracks is not None:
            self.tracks.stop()
        if self.transport is not None:
            await self.transport.close()

        if self._remote_tracks:
            self._remote_tracks = {}
            self._publish_remote(None)
        if self.on_local_stream:
            self.on_local_stream(None)

        if self.state is not CallState.IDLE or self.error is not None:
            self._set_state(CallState.ENDED)
        logger.info("Call ended")

    async def _fail(self, error: PeerCallError):
        if self._teardown is None:
            logger.error(f"Call failed: {error}")
            self.error = error
        await self.leave()

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Call task failed", exc_info=task.exception()
            )

    def _set_state(self, state: CallState):
        self.state = state
        logger.debug(f"Call state: {state.value}")
        if self.on_state_change:
            self.on_state_change(state, self.error)

    # ── Event wiring ────────────────────────────────────────────────────────

    def _create_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self.config.get_rtc_configuration())
        self._remote_tracks = {}
        self.tracks.attach(pc)
        return pc

    async def _pump(self):
        """Dispatch transport events to the engine until the transport closes."""
        async for event in self.transport.events():
            if isinstance(event, PeerJoined):
                self._spawn(self.engine.handle_peer_joined(event.peer_id))
            elif isinstance(event, PeerLeft):
                self._spawn(self._peer_left(event.peer_id))
            elif isinstance(event, Signal):
                self._spawn(self.engine.handle_signal(event.sender, event.payload))
            elif isinstance(event, TransportClosed):
                if self._teardown is None:
                    self._spawn(self._fail(SignalingTransportFailure(event.reason)))
                return

    async def _peer_left(self, peer_id: str):
        if self.engine.bound_peer != peer_id:
            await self.engine.handle_peer_left(peer_id)
            return
        connection = self.engine.connection
        await self.engine.handle_peer_left(peer_id)
        self.tracks.detach(connection)
        if self._remote_tracks:
            self._remote_tracks = {}
            self._publish_remote(None)

    async def _renegotiate(self):
        if self.engine is not None:
            await self.engine.renegotiate()

    def _connectivity_failed(self, error: ConnectivityFailure):
        self._spawn(self._fail(error))

    def _remote_track(self, peer_id: str, track: MediaStreamTrack):
        self._remote_tracks[track.kind] = track
        self._publish_remote(
            RemoteStream(
                peer_id=peer_id,
                audio=self._remote_tracks.get("audio"),
                video=self._remote_tracks.get("video"),
            )
        )

    def _publish_local(self, stream: LocalStream):
        if self.on_local_stream:
            self.on_local_stream(stream)

    def _publish_remote(self, stream: Optional[RemoteStream]):
        if self.on_remote_stream:
            self.on_remote_stream(stream)

    def _sharing_changed(self, sharing: bool):
        if self.on_sharing_changed:
            self.on_sharing_changed(sharing)

    # ── Controls ────────────────────────────────────────────────────────────

    def _require_tracks(self) -> TrackController:
        if self.tracks is None or self.tracks.stopped:
            raise RuntimeError("Not in a call")
        return self.tracks

    @property
    def muted(self) -> bool:
        return self.tracks is None or self.tracks.muted

    @property
    def video_off(self) -> bool:
        return self.tracks is None or self.tracks.video_off

    @property
    def sharing(self) -> bool:
        return self.tracks is not None and self.tracks.sharing

    def toggle_mute(self) -> bool:
        """Mute or unmute the microphone.

        Returns:
            True if the microphone is now muted.
        """
        tracks = self._require_tracks()
        tracks.set_audio_enabled(tracks.muted)
        return tracks.muted

    def toggle_video(self) -> bool:
        """Turn the camera off or back on.

        Returns:
            True if the camera is now off.
        """
        tracks = self._require_tracks()
        tracks.set_video_enabled(tracks.video_off)
        return tracks.video_off

    async def toggle_share(self) -> bool:
        """Start or stop screen sharing.

        Returns:
            True if the screen is now being shared.

        Raises:
            MediaAcquisitionFailure: If screen capture is unavailable. The call
                itself goes on.
        """
        tracks = self._require_tracks()
        if tracks.sharing:
            tracks.stop_screen_share()
        else:
            await tracks.start_screen_share()
        return tracks.sharing
