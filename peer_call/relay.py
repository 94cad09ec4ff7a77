"""Minimal room relay for development and tests.

Assigns each websocket connection a peer id, tells the members of a room when
someone joins or leaves and forwards ``signal`` messages to their addressee
in the same room. It never looks inside the signal data.

Usage:
    peer-call relay [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
import uuid
from typing import Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from peer_call.exceptions import NegotiationProtocolError
from peer_call.protocol import (
    MSG_JOIN_ROOM,
    MSG_SIGNAL,
    MSG_USER_CONNECTED,
    MSG_USER_DISCONNECTED,
    MSG_WELCOME,
    format_message,
    parse_message,
)

logger = logging.getLogger(__name__)


class RoomRelay:
    """Forwards signaling messages between the members of a room.

    Attributes:
        rooms: room -> {peer_id: websocket}
    """

    def __init__(self):
        self.rooms: Dict[str, Dict[str, object]] = {}

    def members(self, room: str):
        return list(self.rooms.get(room, {}))

    async def handler(self, websocket):
        """Handle one client connection for its whole lifetime."""
        room: Optional[str] = None
        peer_id: Optional[str] = None

        try:
            async for message in websocket:
                try:
                    data = parse_message(message)
                except NegotiationProtocolError as e:
                    logger.warning(f"Dropping message from {peer_id}: {e}")
                    continue
                msg_type = data["type"]

                if msg_type == MSG_JOIN_ROOM:
                    if room is not None:
                        logger.warning(f"{peer_id} tried to join a second room")
                        continue
                    room = str(data.get("room") or "")
                    if not room:
                        logger.warning("join-room without a room, closing")
                        break
                    peer_id = f"p-{uuid.uuid4().hex[:8]}"
                    await websocket.send(format_message(MSG_WELCOME, peerId=peer_id))
                    await self._broadcast(
                        room, format_message(MSG_USER_CONNECTED, peerId=peer_id)
                    )
                    self.rooms.setdefault(room, {})[peer_id] = websocket
                    logger.info(
                        f"{peer_id} joined room '{room}' (members: {len(self.rooms[room])})"
                    )

                elif msg_type == MSG_SIGNAL:
                    if room is None:
                        logger.warning("signal before join-room, dropping")
                        continue
                    to = data.get("to")
                    if not isinstance(to, str):
                        logger.warning(f"Signal without a valid target from {peer_id}, dropping")
                        continue
                    target = self.rooms[room].get(to)
                    if target is None:
                        logger.warning(f"Signal target not in room '{room}': {to}")
                        continue
                    # the sender cannot spoof its identity
                    data["from"] = peer_id
                    await self._deliver(target, json.dumps(data))
                    logger.debug(f"Forwarded signal from {peer_id} to {to}")

                else:
                    logger.warning(f"Unknown message type from {peer_id}: {msg_type}")

        except ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if room is not None and peer_id is not None:
                members = self.rooms.get(room, {})
                members.pop(peer_id, None)
                if not members:
                    self.rooms.pop(room, None)
                logger.info(f"{peer_id} left room '{room}' (remaining: {len(members)})")
                await self._broadcast(
                    room, format_message(MSG_USER_DISCONNECTED, peerId=peer_id)
                )

    async def _broadcast(self, room: str, message: str):
        for websocket in list(self.rooms.get(room, {}).values()):
            await self._deliver(websocket, message)

    async def _deliver(self, websocket, message: str):
        try:
            await websocket.send(message)
        except ConnectionClosed:
            # its own handler removes it from the room
            logger.debug("Dropped a message for a closing connection")


async def serve(host: str = "localhost", port: int = 8080) -> None:
    """Run a relay until cancelled."""
    relay = RoomRelay()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Signaling relay running on ws://{host}:{port}")
        await asyncio.Future()
