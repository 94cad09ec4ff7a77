"""Tests for the development room relay."""

import asyncio
import json

import pytest
import websockets

from fakes import running_relay


async def receive(websocket, timeout=2.0):
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout))


async def join(websocket, room):
    await websocket.send(json.dumps({"type": "join-room", "room": room}))
    welcome = await receive(websocket)
    assert welcome["type"] == "welcome"
    return welcome["peerId"]


class TestRooms:
    @pytest.mark.asyncio
    async def test_members_are_told_about_newcomers(self):
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                a_id = await join(a, "r1")
                b_id = await join(b, "r1")

                assert await receive(a) == {"type": "user-connected", "peerId": b_id}
                assert a_id != b_id
                assert sorted(relay.members("r1")) == sorted([a_id, b_id])

    @pytest.mark.asyncio
    async def test_rooms_are_isolated(self):
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                await join(a, "r1")
                b_id = await join(b, "r2")

                # a signal across rooms is dropped
                await a.send(json.dumps({"type": "signal", "to": b_id, "data": {}}))
                with pytest.raises(asyncio.TimeoutError):
                    await receive(b, timeout=0.2)
                with pytest.raises(asyncio.TimeoutError):
                    await receive(a, timeout=0.2)

    @pytest.mark.asyncio
    async def test_departure_is_announced(self):
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a:
                await join(a, "r1")
                async with websockets.connect(url) as b:
                    b_id = await join(b, "r1")
                    await receive(a)

                assert await receive(a) == {"type": "user-disconnected", "peerId": b_id}
                assert len(relay.members("r1")) == 1

            for _ in range(100):
                if "r1" not in relay.rooms:
                    break
                await asyncio.sleep(0.01)
            assert "r1" not in relay.rooms


class TestForwarding:
    @pytest.mark.asyncio
    async def test_signal_forwarded_with_sender(self):
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                a_id = await join(a, "r1")
                b_id = await join(b, "r1")
                await receive(a)

                data = {"sdp": {"type": "offer", "sdp": "v=0"}}
                await a.send(json.dumps({"type": "signal", "to": b_id, "from": "x", "data": data}))

                assert await receive(b) == {
                    "type": "signal",
                    "to": b_id,
                    "from": a_id,
                    "data": data,
                }

    @pytest.mark.asyncio
    async def test_signal_before_join_dropped(self):
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                b_id = await join(b, "r1")

                await a.send(json.dumps({"type": "signal", "to": b_id, "data": {}}))
                await a.send("not json")

                with pytest.raises(asyncio.TimeoutError):
                    await receive(b, timeout=0.2)
                assert relay.members("r1") == [b_id]

    @pytest.mark.asyncio
    async def test_non_string_target_dropped(self):
        """Test that a bad target is dropped without closing the sender."""
        async with running_relay() as (relay, url):
            async with websockets.connect(url) as a, websockets.connect(url) as b:
                a_id = await join(a, "r1")
                b_id = await join(b, "r1")
                await receive(a)

                await a.send(json.dumps({"type": "signal", "to": [b_id], "data": {}}))
                await a.send(json.dumps({"type": "signal", "to": {"id": b_id}, "data": {}}))
                await a.send(json.dumps({"type": "signal", "to": b_id, "data": {"n": 1}}))

                message = await receive(b)
                assert message["from"] == a_id
                assert message["data"] == {"n": 1}
                assert sorted(relay.members("r1")) == sorted([a_id, b_id])
