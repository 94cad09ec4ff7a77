"""Exceptions raised by peer-call.

The call layer distinguishes failures that end a call from anomalies the
negotiation engine absorbs on its own:

- MediaAcquisitionFailure: camera, microphone or display capture could not be
  opened. Fatal to ``join``; the caller may simply try to join again.
- SignalingTransportFailure: the relay is unreachable or the websocket dropped.
  Fatal to the active call; reconnecting means joining again.
- NegotiationProtocolError: a malformed or out-of-order signaling payload. The
  engine logs it and keeps its current state; it never reaches the caller.
- ConnectivityFailure: the peer connection reported ``failed`` or
  ``disconnected``. The call ends, nothing is retried.
"""


class PeerCallError(Exception):
    """Base class for peer-call errors."""


class MediaAcquisitionFailure(PeerCallError):
    """Raised when local media (camera, microphone, display) cannot be acquired."""

    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"Could not acquire {kind} media: {reason}")


class SignalingTransportFailure(PeerCallError):
    """Raised when the signaling relay cannot be reached or the link drops."""


class NegotiationProtocolError(PeerCallError):
    """Raised for malformed or out-of-order signaling payloads."""


class ConnectivityFailure(PeerCallError):
    """Raised when the peer connection fails or disconnects."""

    def __init__(self, peer_id: str, state: str):
        self.peer_id = peer_id
        self.state = state
        super().__init__(f"Connection to {peer_id} is {state}")
