"""Websocket transport to the signaling relay.

The transport knows nothing about negotiation: it joins a room, turns relay
frames into transport events and addresses outgoing payloads. A dropped
connection ends the event stream with a ``TransportClosed`` event; there is
no reconnection, a new call needs a new transport.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from peer_call.exceptions import NegotiationProtocolError, SignalingTransportFailure
from peer_call.protocol import (
    MSG_JOIN_ROOM,
    MSG_WELCOME,
    Payload,
    TransportClosed,
    TransportEvent,
    event_from_message,
    format_message,
    format_signal,
    parse_message,
)

logger = logging.getLogger(__name__)

# Seconds to wait for the websocket handshake and for the relay's welcome
CONNECT_TIMEOUT = 10.0


class SignalingTransport:
    """Duplex message channel to the signaling relay for one room.

    Attributes:
        url: Relay websocket URL.
        room: Room joined, once connected.
        peer_id: Identity assigned to this connection by the relay.
    """

    def __init__(self, url: str, connect_timeout: float = CONNECT_TIMEOUT):
        self.url = url
        self.connect_timeout = connect_timeout
        self.room: Optional[str] = None
        self.peer_id: Optional[str] = None
        self.websocket = None

        self._events: asyncio.Queue = asyncio.Queue()
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self._closed

    async def connect(self, room: str) -> str:
        """Open the websocket and join ``room``.

        Args:
            room: Room identifier to join.

        Returns:
            The peer id the relay assigned to this client.

        Raises:
            SignalingTransportFailure: If the relay cannot be reached, does not
                welcome the client, or the transport was closed meanwhile.
        """
        if self.websocket is not None or self._closed:
            raise SignalingTransportFailure("Transport already used; create a new one")

        logger.info(f"Connecting to signaling relay at {self.url}")
        try:
            self.websocket = await websockets.connect(
                self.url, open_timeout=self.connect_timeout
            )
            await self.websocket.send(format_message(MSG_JOIN_ROOM, room=room))
            welcome = parse_message(
                await asyncio.wait_for(self.websocket.recv(), self.connect_timeout)
            )
        except (OSError, WebSocketException, asyncio.TimeoutError, NegotiationProtocolError) as e:
            await self._close_websocket()
            raise SignalingTransportFailure(
                f"Could not join room '{room}' at {self.url}: {e}"
            ) from e

        peer_id = welcome.get("peerId")
        if welcome["type"] != MSG_WELCOME or not isinstance(peer_id, str) or not peer_id:
            await self._close_websocket()
            raise SignalingTransportFailure(f"Unexpected reply to join-room: {welcome}")

        if self._closed:
            # close() ran while the handshake was in flight
            await self._close_websocket()
            raise SignalingTransportFailure("Transport closed while joining")

        self.room = room
        self.peer_id = peer_id
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Joined room '{room}' as {peer_id}")
        return peer_id

    async def _read_loop(self):
        """Turn relay frames into events until the websocket closes."""
        reason = "connection closed by relay"
        try:
            async for message in self.websocket:
                try:
                    event = event_from_message(parse_message(message))
                except NegotiationProtocolError as e:
                    logger.warning(f"Dropping malformed relay message: {e}")
                    continue

                if event is None:
                    logger.debug(f"Unhandled relay message: {message}")
                    continue
                self._events.put_nowait(event)
        except ConnectionClosed as e:
            reason = f"connection lost: {e}"

        if not self._closed:
            logger.warning(f"Signaling transport closed: {reason}")
            self._events.put_nowait(TransportClosed(reason))

    async def events(self) -> AsyncIterator[TransportEvent]:
        """Yield transport events; the last one is always ``TransportClosed``."""
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, TransportClosed):
                return

    async def send(self, to: str, payload: Payload) -> None:
        """Send a payload to another peer in the room.

        Raises:
            SignalingTransportFailure: If the transport is not connected.
        """
        if not self.connected or self.peer_id is None:
            raise SignalingTransportFailure("Signaling transport is not connected")
        try:
            await self.websocket.send(format_signal(to, self.peer_id, payload))
        except ConnectionClosed as e:
            raise SignalingTransportFailure(f"Signaling transport dropped: {e}") from e

    async def close(self) -> None:
        """Close the transport. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        await self._close_websocket()
        self._events.put_nowait(TransportClosed("closed locally"))
        logger.info("Signaling transport closed")

    async def _close_websocket(self):
        if self.websocket is not None:
            websocket, self.websocket = self.websocket, None
            await websocket.close()
