"""Signaling wire protocol for peer-call.

All messages are JSON text frames exchanged with the signaling relay over a
websocket. The relay only forwards; it never looks inside ``data``.

Message Types
-------------

**join-room**
    Sent by: Client
    Purpose: Enter a room. Any client naming the room joins it.
    Format: ``{"type": "join-room", "room": "r1"}``

**welcome**
    Sent by: Relay
    Purpose: Tells the client the peer id the relay assigned to this connection.
    Format: ``{"type": "welcome", "peerId": "p-3f2a"}``

**user-connected** / **user-disconnected**
    Sent by: Relay
    Purpose: Room membership changes, delivered to the members already present.
    Format: ``{"type": "user-connected", "peerId": "p-91bc"}``

**signal**
    Sent by: Client (relayed to ``to``)
    Purpose: Carries either a session description or an ICE candidate.
    Format::

        {"type": "signal", "to": "p-91bc", "from": "p-3f2a",
         "data": {"sdp": {"type": "offer", "sdp": "v=0..."}}}

        {"type": "signal", "to": "p-91bc", "from": "p-3f2a",
         "data": {"candidate": {"candidate": "candidate:...",
                                "sdpMLineIndex": 0, "sdpMid": "0"}}}

Message Flow
------------

1. A -> Relay: join-room r1;  Relay -> A: welcome
2. B -> Relay: join-room r1;  Relay -> B: welcome;  Relay -> A: user-connected B
3. A -> B: signal offer
4. B -> A: signal answer
5. A <-> B: signal candidate (any number, any time after the peer is known)
6. B disconnects;  Relay -> A: user-disconnected B
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from peer_call.exceptions import NegotiationProtocolError

MSG_JOIN_ROOM = "join-room"
MSG_WELCOME = "welcome"
MSG_USER_CONNECTED = "user-connected"
MSG_USER_DISCONNECTED = "user-disconnected"
MSG_SIGNAL = "signal"

SDP_OFFER = "offer"
SDP_ANSWER = "answer"


@dataclass(frozen=True)
class SdpPayload:
    """A session description (offer or answer)."""

    type: str
    sdp: str

    def to_description(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=self.sdp, type=self.type)

    @classmethod
    def from_description(cls, description: RTCSessionDescription) -> "SdpPayload":
        return cls(type=description.type, sdp=description.sdp)


@dataclass(frozen=True)
class CandidatePayload:
    """A single trickled ICE candidate in browser (``candidate:...``) form."""

    candidate: str
    sdpMLineIndex: Optional[int] = None
    sdpMid: Optional[str] = None

    def to_candidate(self) -> RTCIceCandidate:
        """Convert to an aiortc candidate.

        Raises:
            NegotiationProtocolError: If the candidate line cannot be parsed.
        """
        line = self.candidate
        if line.startswith("candidate:"):
            line = line.split(":", 1)[1]
        try:
            candidate = candidate_from_sdp(line)
        except (AssertionError, IndexError, ValueError) as e:
            raise NegotiationProtocolError(f"Malformed candidate {self.candidate!r}: {e}")
        candidate.sdpMid = self.sdpMid
        candidate.sdpMLineIndex = self.sdpMLineIndex
        return candidate

    @classmethod
    def from_candidate(cls, candidate: RTCIceCandidate) -> "CandidatePayload":
        return cls(
            candidate="candidate:" + candidate_to_sdp(candidate),
            sdpMLineIndex=candidate.sdpMLineIndex,
            sdpMid=candidate.sdpMid,
        )


Payload = Union[SdpPayload, CandidatePayload]


# Transport events, in the order a client sees them.


@dataclass(frozen=True)
class PeerJoined:
    peer_id: str


@dataclass(frozen=True)
class PeerLeft:
    peer_id: str


@dataclass(frozen=True)
class Signal:
    sender: str
    payload: Payload


@dataclass(frozen=True)
class TransportClosed:
    """Terminal event: the relay connection is gone."""

    reason: str


TransportEvent = Union[PeerJoined, PeerLeft, Signal, TransportClosed]


def payload_to_dict(payload: Payload) -> Dict[str, Any]:
    """Encode a payload as the ``data`` member of a signal envelope."""
    if isinstance(payload, SdpPayload):
        return {"sdp": {"type": payload.type, "sdp": payload.sdp}}
    return {
        "candidate": {
            "candidate": payload.candidate,
            "sdpMLineIndex": payload.sdpMLineIndex,
            "sdpMid": payload.sdpMid,
        }
    }


def payload_from_dict(data: Dict[str, Any]) -> Payload:
    """Decode the ``data`` member of a signal envelope.

    Raises:
        NegotiationProtocolError: If ``data`` is neither a description nor a
            candidate.
    """
    if not isinstance(data, dict):
        raise NegotiationProtocolError(f"Signal data is not an object: {data!r}")

    if "sdp" in data:
        sdp = data["sdp"]
        if not isinstance(sdp, dict) or sdp.get("type") not in (SDP_OFFER, SDP_ANSWER):
            raise NegotiationProtocolError(f"Invalid session description: {sdp!r}")
        if not isinstance(sdp.get("sdp"), str):
            raise NegotiationProtocolError("Session description has no sdp text")
        return SdpPayload(type=sdp["type"], sdp=sdp["sdp"])

    if "candidate" in data:
        candidate = data["candidate"]
        if not isinstance(candidate, dict) or not candidate.get("candidate"):
            raise NegotiationProtocolError(f"Invalid candidate: {candidate!r}")
        return CandidatePayload(
            candidate=candidate["candidate"],
            sdpMLineIndex=candidate.get("sdpMLineIndex"),
            sdpMid=candidate.get("sdpMid"),
        )

    raise NegotiationProtocolError(f"Unknown signal data: {sorted(data)}")


def format_message(msg_type: str, **fields: Any) -> str:
    """Format a relay message as a JSON text frame.

    Examples:
        >>> format_message(MSG_JOIN_ROOM, room="r1")
        '{"type": "join-room", "room": "r1"}'
    """
    return json.dumps({"type": msg_type, **fields})


def format_signal(to: str, sender: str, payload: Payload) -> str:
    """Format a signal envelope addressed to ``to``."""
    return format_message(MSG_SIGNAL, to=to, **{"from": sender}, data=payload_to_dict(payload))


def parse_message(message: Union[str, bytes]) -> Dict[str, Any]:
    """Parse a relay message.

    Returns:
        The decoded message object; it always carries a string ``type``.

    Raises:
        NegotiationProtocolError: If the frame is not a JSON object with a type.
    """
    try:
        data = json.loads(message)
    except (TypeError, ValueError) as e:
        raise NegotiationProtocolError(f"Invalid JSON from relay: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise NegotiationProtocolError(f"Relay message has no type: {data!r}")
    return data


def event_from_message(data: Dict[str, Any]) -> Optional[TransportEvent]:
    """Map a parsed relay message to a transport event.

    Returns None for message types the client does not act on.

    Raises:
        NegotiationProtocolError: If a known message type is missing fields.
    """
    msg_type = data["type"]

    if msg_type in (MSG_USER_CONNECTED, MSG_USER_DISCONNECTED):
        peer_id = data.get("peerId")
        if not isinstance(peer_id, str) or not peer_id:
            raise NegotiationProtocolError(f"{msg_type} without peerId")
        if msg_type == MSG_USER_CONNECTED:
            return PeerJoined(peer_id)
        return PeerLeft(peer_id)

    if msg_type == MSG_SIGNAL:
        sender = data.get("from")
        if not isinstance(sender, str) or not sender:
            raise NegotiationProtocolError("signal without sender")
        return Signal(sender=sender, payload=payload_from_dict(data.get("data")))

    return None
