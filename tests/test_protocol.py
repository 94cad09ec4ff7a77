"""Tests for the signaling wire format."""

import json

import pytest

from fakes import HOST_CANDIDATE, local_candidate
from peer_call.exceptions import NegotiationProtocolError
from peer_call.protocol import (
    MSG_JOIN_ROOM,
    CandidatePayload,
    PeerJoined,
    PeerLeft,
    SdpPayload,
    Signal,
    event_from_message,
    format_message,
    format_signal,
    parse_message,
    payload_from_dict,
)


class TestEnvelope:
    def test_join_room(self):
        assert json.loads(format_message(MSG_JOIN_ROOM, room="r1")) == {
            "type": "join-room",
            "room": "r1",
        }

    def test_signal_with_description(self):
        message = json.loads(format_signal("p2", "p1", SdpPayload("offer", "v=0")))
        assert message == {
            "type": "signal",
            "to": "p2",
            "from": "p1",
            "data": {"sdp": {"type": "offer", "sdp": "v=0"}},
        }

    def test_signal_with_candidate(self):
        payload = CandidatePayload(HOST_CANDIDATE, sdpMLineIndex=0, sdpMid="0")
        message = json.loads(format_signal("p2", "p1", payload))
        assert message["data"] == {
            "candidate": {"candidate": HOST_CANDIDATE, "sdpMLineIndex": 0, "sdpMid": "0"}
        }

    def test_parsed_signal_becomes_event(self):
        payload = SdpPayload("answer", "v=0 answer")
        event = event_from_message(parse_message(format_signal("p2", "p1", payload)))
        assert event == Signal(sender="p1", payload=payload)


class TestParsing:
    @pytest.mark.parametrize("frame", ["not json", "[1, 2]", '{"room": "r1"}', '{"type": 3}'])
    def test_invalid_frames(self, frame):
        with pytest.raises(NegotiationProtocolError):
            parse_message(frame)

    def test_membership_events(self):
        assert event_from_message({"type": "user-connected", "peerId": "p2"}) == PeerJoined("p2")
        assert event_from_message({"type": "user-disconnected", "peerId": "p2"}) == PeerLeft("p2")

    def test_membership_without_peer_id(self):
        with pytest.raises(NegotiationProtocolError):
            event_from_message({"type": "user-connected"})

    def test_signal_without_sender(self):
        with pytest.raises(NegotiationProtocolError):
            event_from_message({"type": "signal", "data": {"sdp": {"type": "offer", "sdp": ""}}})

    def test_unknown_type_is_not_an_event(self):
        assert event_from_message({"type": "welcome", "peerId": "p1"}) is None
        assert event_from_message({"type": "chat", "text": "hi"}) is None

    @pytest.mark.parametrize(
        "data",
        [
            None,
            {},
            {"sdp": {"type": "pranswer", "sdp": "v=0"}},
            {"sdp": {"type": "offer"}},
            {"candidate": {}},
            {"candidate": "candidate:1"},
        ],
    )
    def test_invalid_signal_data(self, data):
        with pytest.raises(NegotiationProtocolError):
            payload_from_dict(data)

    def test_candidate_without_mid(self):
        payload = payload_from_dict({"candidate": {"candidate": HOST_CANDIDATE}})
        assert payload == CandidatePayload(HOST_CANDIDATE)


class TestCandidateConversion:
    def test_to_candidate(self):
        candidate = CandidatePayload(HOST_CANDIDATE, sdpMLineIndex=1, sdpMid="1").to_candidate()
        assert candidate.ip == "192.168.1.2"
        assert candidate.port == 5000
        assert candidate.type == "host"
        assert candidate.sdpMid == "1"
        assert candidate.sdpMLineIndex == 1

    def test_from_candidate(self):
        payload = CandidatePayload.from_candidate(local_candidate())
        assert payload.candidate.startswith("candidate:1 1 udp 2130706431 192.168.1.2 5000 typ host")
        assert payload.sdpMid == "0"
        assert payload.sdpMLineIndex == 0

    @pytest.mark.parametrize("line", ["candidate:", "candidate:1 1 udp", "candidate:x 1 udp y ip z typ host"])
    def test_malformed_candidate(self, line):
        with pytest.raises(NegotiationProtocolError):
            CandidatePayload(line).to_candidate()
