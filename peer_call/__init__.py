"""peer-call: two-party audio/video calls over WebRTC.

This package provides:
- session: CallSession, the control surface a UI drives (join, leave, toggles)
- negotiation: offer/answer state machine with candidate buffering and glare handling
- signaling: websocket transport to the room relay
- tracks: local track control (mute, camera, screen-share substitution)
- media: capture providers (devices via FFmpeg, or synthetic)
- relay: development room relay
"""

from peer_call.config import Config, IceServerConfig, MediaConfig, get_config
from peer_call.exceptions import (
    ConnectivityFailure,
    MediaAcquisitionFailure,
    NegotiationProtocolError,
    PeerCallError,
    SignalingTransportFailure,
)
from peer_call.media import DeviceMediaProvider, MediaProvider, SyntheticMediaProvider
from peer_call.negotiation import NegotiationEngine, NegotiationState
from peer_call.session import CallSession, CallState, RemoteStream
from peer_call.signaling import SignalingTransport
from peer_call.tracks import LocalStream, LocalTrack, TrackController, TrackSource

__version__ = "0.1.0"

__all__ = [
    # Session
    "CallSession",
    "CallState",
    "RemoteStream",
    # Negotiation and signaling
    "NegotiationEngine",
    "NegotiationState",
    "SignalingTransport",
    # Media
    "MediaProvider",
    "DeviceMediaProvider",
    "SyntheticMediaProvider",
    "TrackController",
    "LocalTrack",
    "LocalStream",
    "TrackSource",
    # Configuration
    "Config",
    "IceServerConfig",
    "MediaConfig",
    "get_config",
    # Errors
    "PeerCallError",
    "MediaAcquisitionFailure",
    "SignalingTransportFailure",
    "NegotiationProtocolError",
    "ConnectivityFailure",
]
