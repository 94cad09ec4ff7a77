"""Offer/answer negotiation with the remote peer.

The engine keeps one ``PeerNegotiation`` record per remote peer, keyed by the
peer id the relay assigned to it. Only one remote peer is bound at a time; a
third participant's messages are ignored.

State machine (per remote peer)::

    IDLE ──peer joined──────────▶ OFFER_SENT ──answer──▶ STABLE
    IDLE ──offer─▶ ANSWER_PENDING ──answer sent─────────▶ STABLE
    STABLE ──renegotiate()──▶ RENEGOTIATING ──answer──▶ STABLE
    STABLE ──offer─▶ ANSWER_PENDING ──answer sent───────▶ STABLE

Glare: when an offer arrives while our own offer is outstanding, the peer
whose id sorts lower yields. It drops its pending offer and answers the
incoming one; the other side ignores the incoming offer. aiortc cannot roll
back a local offer, so yielding replaces the connection with a fresh one from
the connection factory.

A collision during RENEGOTIATING is resolved the same way, but the side that
keeps its offer has already started ICE on its connection and aiortc does not
restart it for new remote parameters. Media with the replaced connection never
comes up, and the call ends once ICE on the kept connection reports failure.
The yielding side also remembers its dropped change and offers it again once
the exchange settles.

A structural change requested while an exchange is in flight is remembered
(``renegotiation_pending``) and offered as soon as the peer is STABLE again.

Remote candidates that arrive before a remote description has been applied
are buffered and applied, in order, right after the description. Description
and candidate application are serialized per peer with an ``asyncio.Lock``.
Every await is followed by a check that the peer record (and its connection)
is still current; completions for a peer that left or for a replaced
connection are dropped.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from peer_call.exceptions import (
    ConnectivityFailure,
    NegotiationProtocolError,
    SignalingTransportFailure,
)
from peer_call.protocol import (
    SDP_ANSWER,
    SDP_OFFER,
    CandidatePayload,
    Payload,
    SdpPayload,
)

logger = logging.getLogger(__name__)

# ICE connection states that end the call
FATAL_ICE_STATES = ("failed", "disconnected")

_DESCRIPTION_ERRORS = (InvalidAccessError, InvalidStateError, ValueError)


class NegotiationState(enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    ANSWER_PENDING = "answer-pending"
    STABLE = "stable"
    RENEGOTIATING = "renegotiating"


# States in which a local offer is outstanding
OFFER_STATES = (NegotiationState.OFFER_SENT, NegotiationState.RENEGOTIATING)


@dataclass(eq=False)
class PeerNegotiation:
    """Negotiation record for one remote peer.

    Attributes:
        peer_id: Remote peer identity.
        connection: Peer connection currently used with this peer.
        state: Current negotiation state.
        candidates: Remote candidates waiting for a remote description.
        remote_applied: Whether ``connection`` has a remote description.
        lock: Serializes description and candidate application.
        renegotiation_pending: A local change is waiting for STABLE to be
            offered.
        active: Cleared once the record is discarded.
    """

    peer_id: str
    connection: RTCPeerConnection
    state: NegotiationState = NegotiationState.IDLE
    candidates: List[CandidatePayload] = field(default_factory=list)
    remote_applied: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    active: bool = True
    renegotiation_pending: bool = False


class NegotiationEngine:
    """Drives session description and candidate exchange with one remote peer.

    Args:
        local_id: Our own peer id, used for glare tie-breaking.
        send: Coroutine function ``send(peer_id, payload)`` delivering a
            payload through the signaling transport.
        connection_factory: Returns a new ``RTCPeerConnection`` with the local
            tracks attached. Called when a peer is bound and again whenever a
            connection has to be replaced.

    Attributes:
        on_failure: Called with a ``ConnectivityFailure`` when the connection
            to the bound peer fails.
        on_remote_track: Called with ``(peer_id, track)`` for each remote track.
    """

    def __init__(
        self,
        local_id: str,
        send: Callable[[str, Payload], Awaitable[None]],
        connection_factory: Callable[[], RTCPeerConnection],
    ):
        self.local_id = local_id
        self._send = send
        self._connection_factory = connection_factory
        self._peers: Dict[str, PeerNegotiation] = {}
        self._closed = False

        self.on_failure: Optional[Callable[[ConnectivityFailure], None]] = None
        self.on_remote_track: Optional[Callable[[str, MediaStreamTrack], None]] = None

    # ── Inspection ──────────────────────────────────────────────────────────

    @property
    def bound_peer(self) -> Optional[str]:
        return next(iter(self._peers), None)

    @property
    def connection(self) -> Optional[RTCPeerConnection]:
        peer = self._bound()
        return peer.connection if peer is not None else None

    @property
    def closed(self) -> bool:
        return self._closed

    def state(self, peer_id: str) -> NegotiationState:
        peer = self._peers.get(peer_id)
        return peer.state if peer is not None else NegotiationState.IDLE

    def buffered_candidates(self, peer_id: str) -> List[CandidatePayload]:
        peer = self._peers.get(peer_id)
        return list(peer.candidates) if peer is not None else []

    # ── Transport events ────────────────────────────────────────────────────

    async def handle_peer_joined(self, peer_id: str) -> None:
        """A new participant joined the room: bind it and offer."""
        if self._closed:
            return
        peer = self._bind(peer_id)
        if peer is None:
            return
        logger.info(f"Peer {peer_id} joined, sending offer")
        await self._offer(peer, NegotiationState.IDLE, NegotiationState.OFFER_SENT)

    async def handle_peer_left(self, peer_id: str) -> None:
        """The remote participant left: forget it and close its connection."""
        peer = self._peers.pop(peer_id, None)
        if peer is None:
            logger.debug(f"Ignoring departure of unknown peer {peer_id}")
            return
        logger.info(f"Peer {peer_id} left, closing connection")
        await self._discard(peer)

    async def handle_signal(self, sender: str, payload: Payload) -> None:
        """Apply a description or candidate received from ``sender``."""
        if self._closed:
            return

        if isinstance(payload, SdpPayload) and payload.type == SDP_ANSWER:
            peer = self._peers.get(sender)
            if peer is None:
                self._protocol_error(f"answer from unknown peer {sender}")
                return
        else:
            peer = self._bind(sender)
            if peer is None:
                return

        if isinstance(payload, CandidatePayload):
            await self._on_candidate(peer, payload)
            return
        if payload.type == SDP_OFFER:
            await self._on_offer(peer, payload)
        else:
            await self._on_answer(peer, payload)
        await self._offer_pending_change(peer)

    # ── Local triggers ──────────────────────────────────────────────────────

    async def renegotiate(self) -> bool:
        """Run a new offer/answer exchange after a structural track change.

        Returns:
            True if an offer was sent. False if there is no peer, or if an
            exchange is in flight, in which case the change is offered once
            the peer is STABLE again.
        """
        peer = self._bound()
        if peer is None or self._closed:
            logger.debug("No peer to renegotiate with")
            return False
        if peer.state is not NegotiationState.STABLE:
            logger.info(
                f"Deferring renegotiation with {peer.peer_id} in state {peer.state.value}"
            )
            peer.renegotiation_pending = True
            return False
        peer.renegotiation_pending = False
        logger.info(f"Renegotiating with {peer.peer_id}")
        return await self._offer(
            peer, NegotiationState.STABLE, NegotiationState.RENEGOTIATING
        )

    async def close(self) -> None:
        """Drop every peer and close its connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        peers = list(self._peers.values())
        self._peers.clear()
        for peer in peers:
            await self._discard(peer)

    # ── Internals ───────────────────────────────────────────────────────────

    def _bound(self) -> Optional[PeerNegotiation]:
        peer_id = self.bound_peer
        return self._peers[peer_id] if peer_id is not None else None

    def _bind(self, peer_id: str) -> Optional[PeerNegotiation]:
        peer = self._peers.get(peer_id)
        if peer is not None:
            return peer
        if self._peers:
            logger.warning(
                f"Ignoring {peer_id}: already negotiating with {self.bound_peer}"
            )
            return None
        peer = PeerNegotiation(peer_id=peer_id, connection=self._new_connection(peer_id))
        self._peers[peer_id] = peer
        logger.debug(f"Bound remote peer {peer_id}")
        return peer

    def _is_live(self, peer: PeerNegotiation, connection: Optional[RTCPeerConnection] = None) -> bool:
        return (
            not self._closed
            and peer.active
            and self._peers.get(peer.peer_id) is peer
            and (connection is None or peer.connection is connection)
        )

    def _is_current(self, peer_id: str, connection: RTCPeerConnection) -> bool:
        peer = self._peers.get(peer_id)
        return peer is not None and self._is_live(peer, connection)

    def _new_connection(self, peer_id: str) -> RTCPeerConnection:
        pc = self._connection_factory()

        @pc.on("icecandidate")
        async def on_icecandidate(candidate: Optional[RTCIceCandidate]):
            # Local candidates go to the bound peer whatever the state
            if candidate is None or not self._is_current(peer_id, pc):
                return
            await self._send_payload(peer_id, CandidatePayload.from_candidate(candidate))

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            if not self._is_current(peer_id, pc):
                return
            logger.info(f"Receiving {track.kind} from {peer_id}")
            if self.on_remote_track:
                self.on_remote_track(peer_id, track)

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            if not self._is_current(peer_id, pc):
                return
            state = pc.iceConnectionState
            logger.info(f"ICE connection state with {peer_id} is now {state}")
            if state in FATAL_ICE_STATES and self.on_failure:
                self.on_failure(ConnectivityFailure(peer_id, state))

        return pc

    async def _replace_connection(self, peer: PeerNegotiation) -> None:
        old = peer.connection
        peer.connection = self._new_connection(peer.peer_id)
        peer.state = NegotiationState.IDLE
        peer.remote_applied = False
        await old.close()

    async def _discard(self, peer: PeerNegotiation) -> None:
        peer.active = False
        peer.renegotiation_pending = False
        peer.state = NegotiationState.IDLE
        peer.candidates.clear()
        peer.remote_applied = False
        await peer.connection.close()

    async def _offer_pending_change(self, peer: PeerNegotiation) -> None:
        if not peer.renegotiation_pending or not self._is_live(peer):
            return
        if peer.state is not NegotiationState.STABLE:
            return
        peer.renegotiation_pending = False
        logger.info(f"Offering deferred change to {peer.peer_id}")
        await self._offer(peer, NegotiationState.STABLE, NegotiationState.RENEGOTIATING)

    async def _send_payload(self, peer_id: str, payload: Payload) -> bool:
        try:
            await self._send(peer_id, payload)
        except SignalingTransportFailure as e:
            logger.warning(f"Could not send to {peer_id}: {e}")
            return False
        return True

    def _protocol_error(self, message: str) -> None:
        error = NegotiationProtocolError(message)
        logger.warning(f"Ignoring signaling message: {error}")

    async def _offer(
        self,
        peer: PeerNegotiation,
        from_state: NegotiationState,
        to_state: NegotiationState,
    ) -> bool:
        if peer.state in OFFER_STATES:
            logger.warning(f"Offer to {peer.peer_id} already in flight, not sending another")
            return False

        async with peer.lock:
            if not self._is_live(peer):
                return False
            if peer.state is not from_state:
                logger.warning(
                    f"Not offering to {peer.peer_id} in state {peer.state.value}"
                )
                return False

            pc = peer.connection
            peer.state = to_state
            try:
                await pc.setLocalDescription(await pc.createOffer())
            except _DESCRIPTION_ERRORS as e:
                logger.error(f"Could not create offer for {peer.peer_id}: {e}")
                if self._is_live(peer, pc):
                    peer.state = from_state
                return False

            if not self._is_live(peer, pc):
                return False
            sent = await self._send_payload(
                peer.peer_id, SdpPayload.from_description(pc.localDescription)
            )
            if sent:
                logger.info(f"Sent offer to {peer.peer_id}")
            return sent

    async def _on_offer(self, peer: PeerNegotiation, payload: SdpPayload) -> None:
        async with peer.lock:
            if not self._is_live(peer):
                return

            if peer.state in OFFER_STATES:
                if self.local_id > peer.peer_id:
                    logger.info(
                        f"Offer collision with {peer.peer_id}: keeping our offer"
                    )
                    return
                logger.info(
                    f"Offer collision with {peer.peer_id}: dropping our offer"
                )
                if peer.state is NegotiationState.RENEGOTIATING:
                    peer.renegotiation_pending = True
                await self._replace_connection(peer)
                if not self._is_live(peer):
                    return
            elif peer.state is NegotiationState.ANSWER_PENDING:
                self._protocol_error(
                    f"offer from {peer.peer_id} while answering a previous one"
                )
                return

            previous = peer.state
            pc = peer.connection
            peer.state = NegotiationState.ANSWER_PENDING
            if not await self._apply_remote(peer, pc, payload):
                if self._is_live(peer, pc):
                    peer.state = previous
                return

            try:
                await pc.setLocalDescription(await pc.createAnswer())
            except _DESCRIPTION_ERRORS as e:
                logger.error(f"Could not create answer for {peer.peer_id}: {e}")
                if self._is_live(peer, pc):
                    peer.state = previous
                return

            if not self._is_live(peer, pc):
                return
            peer.state = NegotiationState.STABLE
            if await self._send_payload(
                peer.peer_id, SdpPayload.from_description(pc.localDescription)
            ):
                logger.info(f"Sent answer to {peer.peer_id}")

    async def _on_answer(self, peer: PeerNegotiation, payload: SdpPayload) -> None:
        async with peer.lock:
            if not self._is_live(peer):
                return
            if peer.state not in OFFER_STATES:
                self._protocol_error(
                    f"answer from {peer.peer_id} in state {peer.state.value} "
                    f"with no offer outstanding"
                )
                return

            pc = peer.connection
            if await self._apply_remote(peer, pc, payload):
                peer.state = NegotiationState.STABLE
                logger.info(f"Negotiation with {peer.peer_id} complete")

    async def _on_candidate(self, peer: PeerNegotiation, payload: CandidatePayload) -> None:
        if not peer.remote_applied:
            peer.candidates.append(payload)
            logger.debug(f"Buffered candidate from {peer.peer_id}")
            return

        async with peer.lock:
            if not self._is_live(peer):
                return
            if not peer.remote_applied:
                # the connection was replaced while we waited
                peer.candidates.append(payload)
                return
            await self._add_candidate(peer, peer.connection, payload)

    async def _apply_remote(
        self, peer: PeerNegotiation, pc: RTCPeerConnection, payload: SdpPayload
    ) -> bool:
        """Apply a remote description, then flush buffered candidates."""
        try:
            await pc.setRemoteDescription(payload.to_description())
        except _DESCRIPTION_ERRORS as e:
            self._protocol_error(f"cannot apply {payload.type} from {peer.peer_id}: {e}")
            return False

        if not self._is_live(peer, pc):
            return False
        peer.remote_applied = True

        pending, peer.candidates = peer.candidates, []
        if pending:
            logger.debug(f"Applying {len(pending)} buffered candidate(s) from {peer.peer_id}")
        for candidate in pending:
            await self._add_candidate(peer, pc, candidate)
            if not self._is_live(peer, pc):
                return False
        return True

    async def _add_candidate(
        self, peer: PeerNegotiation, pc: RTCPeerConnection, payload: CandidatePayload
    ) -> None:
        try:
            await pc.addIceCandidate(payload.to_candidate())
        except NegotiationProtocolError as e:
            logger.warning(f"Ignoring candidate from {peer.peer_id}: {e}")
        except _DESCRIPTION_ERRORS as e:
            self._protocol_error(f"cannot add candidate from {peer.peer_id}: {e}")
        else:
            logger.debug(f"Added candidate from {peer.peer_id}")
