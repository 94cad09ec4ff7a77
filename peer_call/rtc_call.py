"""Entry point for an interactive terminal call."""

import asyncio
from typing import Optional

from aiortc.contrib.media import MediaBlackhole
from loguru import logger
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from peer_call.config import get_config
from peer_call.exceptions import MediaAcquisitionFailure, PeerCallError
from peer_call.media import DeviceMediaProvider, SyntheticMediaProvider
from peer_call.session import CallSession, CallState, RemoteStream

COMMANDS = {
    "mute": "Mute or unmute the microphone",
    "video": "Turn the camera off or on",
    "share": "Start or stop sharing the screen",
    "status": "Show the call state",
    "leave": "Leave the call",
}


class RemoteSink:
    """Consumes the remote tracks so that media keeps flowing without a UI."""

    def __init__(self):
        self.blackhole: Optional[MediaBlackhole] = None

    async def update(self, stream: Optional[RemoteStream]):
        await self.close()
        if stream is None:
            logger.info("Remote participant is gone")
            return
        self.blackhole = MediaBlackhole()
        for track in (stream.audio, stream.video):
            if track is not None:
                self.blackhole.addTrack(track)
        await self.blackhole.start()
        logger.info(
            f"Receiving from {stream.peer_id} "
            f"(audio={stream.audio is not None}, video={stream.video is not None})"
        )

    async def close(self):
        if self.blackhole is not None:
            blackhole, self.blackhole = self.blackhole, None
            await blackhole.stop()


def _status(session: CallSession) -> str:
    return (
        f"room={session.room} me={session.peer_id} peer={session.remote_peer} "
        f"negotiation={session.negotiation_state.value} muted={session.muted} "
        f"video_off={session.video_off} sharing={session.sharing}"
    )


async def _command(session: CallSession, command: str) -> bool:
    """Run one prompt command. Returns False when the call should end."""
    if command == "leave":
        return False
    if command == "mute":
        muted = session.toggle_mute()
        print("Microphone muted" if muted else "Microphone on")
    elif command == "video":
        off = session.toggle_video()
        print("Camera off" if off else "Camera on")
    elif command == "share":
        try:
            sharing = await session.toggle_share()
        except MediaAcquisitionFailure as e:
            logger.error(str(e))
        else:
            print("Sharing screen" if sharing else "Screen sharing stopped")
    elif command == "status":
        print(_status(session))
    elif command:
        print("Commands: " + ", ".join(f"{name} ({text})" for name, text in COMMANDS.items()))
    return True


async def call(session: CallSession, room: str) -> Optional[BaseException]:
    """Join ``room`` and run the command prompt until the call ends.

    Returns:
        The error that ended the call, if any.
    """
    ended = asyncio.Event()
    sink = RemoteSink()
    pending = set()

    def on_state_change(state: CallState, error: Optional[BaseException]):
        if state is CallState.ENDED:
            ended.set()

    def on_remote_stream(stream: Optional[RemoteStream]):
        task = asyncio.ensure_future(sink.update(stream))
        pending.add(task)
        task.add_done_callback(pending.discard)

    session.on_state_change = on_state_change
    session.on_remote_stream = on_remote_stream
    session.on_sharing_changed = lambda sharing: logger.info(
        f"Screen sharing {'on' if sharing else 'off'}"
    )

    await session.join(room)
    print(f"Joined room '{room}'. Type a command ({', '.join(COMMANDS)}).")

    prompt = PromptSession()
    ended_wait = asyncio.ensure_future(ended.wait())
    try:
        with patch_stdout():
            while not ended.is_set():
                line = asyncio.ensure_future(prompt.prompt_async("call> "))
                done, _ = await asyncio.wait(
                    {line, ended_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if line not in done:
                    line.cancel()
                    break
                try:
                    command = line.result().strip().lower()
                except (EOFError, KeyboardInterrupt):
                    break
                if not await _command(session, command):
                    break
    finally:
        ended_wait.cancel()
        await session.leave()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await sink.close()

    return session.error


def run_call(
    room: str,
    server_url: Optional[str] = None,
    synthetic: bool = False,
    audio: bool = True,
    video: bool = True,
) -> None:
    """Main entry point for a terminal call.

    Args:
        room: Room to join.
        server_url: Signaling relay URL; the configured one when None.
        synthetic: Send generated media instead of opening devices.
        audio: Whether to send audio.
        video: Whether to send camera video.

    Raises:
        PeerCallError: If the call could not be joined or ended with an error.
    """
    config = get_config()
    provider = SyntheticMediaProvider() if synthetic else DeviceMediaProvider(config.media)
    session = CallSession(
        config=config,
        media_provider=provider,
        server_url=server_url,
        audio=audio,
        video=video,
    )

    logger.info(f"Joining room '{room}' via {session.server_url}")
    try:
        error = asyncio.run(call(session, room))
    except KeyboardInterrupt:
        logger.info("Call interrupted by user. Shutting down...")
        return
    except PeerCallError as e:
        logger.error(f"Could not join the call: {e}")
        raise

    if error is not None:
        logger.error(f"Call ended: {error}")
        raise error
    logger.info("Call ended")
