"""Tests for signaling transports and the WebSocket relay."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from debate_rtc.errors import SignalingDeliveryUnknown
from debate_rtc.protocol import MSG_JOIN, MSG_LEAVE, ROLE_INITIATOR, make_join, make_leave
from debate_rtc.signaling.server import SignalingRelay
from debate_rtc.signaling.transport import WebSocketSignalingTransport


class FakeWebSocket:
    """Minimal websocket: replays ``frames`` and records sends."""

    def __init__(self, frames=()):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def send(self, raw):
        self.sent.append(raw)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame


# ── In-memory hub ────────────────────────────────────────────────────────────


class TestInMemoryHub:
    @pytest.mark.asyncio
    async def test_delivers_to_other_members_only(self, hub):
        alice = hub.connect("r", "alice")
        bob = hub.connect("r", "bob")
        alice_seen, bob_seen = [], []
        alice.subscribe(AsyncMock(side_effect=alice_seen.append))
        bob.subscribe(AsyncMock(side_effect=bob_seen.append))

        assert await alice.publish(make_join("alice", "r", ROLE_INITIATOR))
        await hub.flush()

        assert [m.type for m in bob_seen] == [MSG_JOIN]
        assert alice_seen == []

    @pytest.mark.asyncio
    async def test_preserves_publish_order(self, hub):
        alice = hub.connect("r", "alice")
        bob = hub.connect("r", "bob")
        seen = []
        bob.subscribe(AsyncMock(side_effect=seen.append))

        await alice.publish(make_join("alice", "r", ROLE_INITIATOR))
        await alice.publish(make_leave("alice", "r"))
        await hub.flush()

        assert [m.type for m in seen] == [MSG_JOIN, MSG_LEAVE]

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscribers(self, hub):
        alice = hub.connect("r", "alice")
        bob = hub.connect("r", "bob")
        await alice.publish(make_join("alice", "r", ROLE_INITIATOR))
        await hub.flush()

        seen = []
        bob.subscribe(AsyncMock(side_effect=seen.append))
        await hub.flush()
        assert seen == []

    @pytest.mark.asyncio
    async def test_rooms_do_not_leak(self, hub):
        alice = hub.connect("r1", "alice")
        carol = hub.connect("r2", "carol")
        seen = []
        carol.subscribe(AsyncMock(side_effect=seen.append))

        await alice.publish(make_join("alice", "r1", ROLE_INITIATOR))
        await hub.flush()
        assert seen == []

    @pytest.mark.asyncio
    async def test_cancelled_subscription_stops_delivery(self, hub):
        alice = hub.connect("r", "alice")
        bob = hub.connect("r", "bob")
        seen = []
        subscription = bob.subscribe(AsyncMock(side_effect=seen.append))
        subscription.cancel()
        subscription.cancel()

        await alice.publish(make_join("alice", "r", ROLE_INITIATOR))
        await hub.flush()
        assert seen == []
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_publish_stamps_room(self, hub):
        alice = hub.connect("r", "alice")
        message = make_leave("alice", None)
        await alice.publish(message)
        assert hub.history[-1].room_id == "r"

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_delivery(self, hub):
        alice = hub.connect("r", "alice")
        bob = hub.connect("r", "bob")
        seen = []

        async def handler(message):
            seen.append(message)
            if message.type == MSG_JOIN:
                raise RuntimeError("boom")

        bob.subscribe(handler)
        await alice.publish(make_join("alice", "r", ROLE_INITIATOR))
        await alice.publish(make_leave("alice", "r"))
        await hub.flush()
        assert [m.type for m in seen] == [MSG_JOIN, MSG_LEAVE]

    @pytest.mark.asyncio
    async def test_publish_after_close_reports_failure(self, hub):
        alice = hub.connect("r", "alice")
        failures = []
        alice.on_delivery_failure(failures.append)

        await alice.close()
        await alice.close()
        assert alice.closed
        assert await alice.publish(make_leave("alice", "r")) is False
        assert len(failures) == 1
        assert isinstance(failures[0], SignalingDeliveryUnknown)
        assert hub.members("r") == []


# ── WebSocket client ─────────────────────────────────────────────────────────


class TestWebSocketSignalingTransport:
    @pytest.mark.asyncio
    async def test_connect_registers_and_dispatches(self):
        join = make_join("bob", "r", ROLE_INITIATOR).to_json()
        ws = FakeWebSocket(
            [
                json.dumps({"type": "registered", "room_id": "r", "peer_id": "alice"}),
                "{not json",
                json.dumps({"type": "mystery", "from": "bob"}),
                join,
            ]
        )
        transport = WebSocketSignalingTransport("ws://relay", "r", "alice")
        seen = []
        transport.subscribe(AsyncMock(side_effect=seen.append))

        with patch(
            "debate_rtc.signaling.transport.websockets.connect",
            new=AsyncMock(return_value=ws),
        ):
            await transport.connect()
        await transport._reader_task

        assert json.loads(ws.sent[0]) == {"type": "register", "room_id": "r", "peer_id": "alice"}
        assert [m.sender for m in seen] == ["bob"]

        await transport.close()
        assert ws.closed

    @pytest.mark.asyncio
    async def test_publish_sends_json(self):
        ws = FakeWebSocket()
        transport = WebSocketSignalingTransport("ws://relay", "r", "alice")
        with patch(
            "debate_rtc.signaling.transport.websockets.connect",
            new=AsyncMock(return_value=ws),
        ):
            await transport.connect()

        assert await transport.publish(make_leave("alice", "r"))
        assert json.loads(ws.sent[-1])["type"] == MSG_LEAVE
        await transport.close()

    @pytest.mark.asyncio
    async def test_publish_before_connect_reports_failure(self):
        transport = WebSocketSignalingTransport("ws://relay", "r", "alice")
        failures = []
        transport.on_delivery_failure(failures.append)

        assert await transport.publish(make_leave("alice", "r")) is False
        assert isinstance(failures[0], SignalingDeliveryUnknown)


# ── Relay ────────────────────────────────────────────────────────────────────


class TestSignalingRelay:
    @pytest.mark.asyncio
    async def test_register_relay_and_leave(self):
        relay = SignalingRelay()
        bob_ws = FakeWebSocket()
        relay.rooms["r"] = {"bob": bob_ws}
        join = make_join("alice", "r", ROLE_INITIATOR).to_json()
        alice_ws = FakeWebSocket(
            [json.dumps({"type": "register", "room_id": "r", "peer_id": "alice"}), join]
        )

        await relay.handler(alice_ws)

        assert json.loads(alice_ws.sent[0])["type"] == "registered"
        assert json.loads(bob_ws.sent[0]) == json.loads(join)
        leave = json.loads(bob_ws.sent[1])
        assert leave["type"] == MSG_LEAVE
        assert leave["from"] == "alice"
        assert relay.rooms["r"] == {"bob": bob_ws}

    @pytest.mark.asyncio
    async def test_unregistered_sender_gets_error(self):
        relay = SignalingRelay()
        ws = FakeWebSocket([make_leave("alice", "r").to_json()])
        await relay.handler(ws)
        assert json.loads(ws.sent[0]) == {"type": "error", "reason": "not registered"}

    @pytest.mark.asyncio
    async def test_register_requires_ids(self):
        relay = SignalingRelay()
        ws = FakeWebSocket([json.dumps({"type": "register", "room_id": "r"})])
        await relay.handler(ws)
        assert json.loads(ws.sent[0])["type"] == "error"
        assert relay.rooms == {}

    @pytest.mark.asyncio
    async def test_last_member_removes_room(self):
        relay = SignalingRelay()
        ws = FakeWebSocket([json.dumps({"type": "register", "room_id": "r", "peer_id": "alice"})])
        await relay.handler(ws)
        assert relay.rooms == {}

    @pytest.mark.asyncio
    async def test_sender_is_stamped_from_registration(self):
        relay = SignalingRelay()
        bob_ws = FakeWebSocket()
        relay.rooms["r"] = {"bob": bob_ws}
        forged = make_leave("alice", "other-room").to_json()
        mallory_ws = FakeWebSocket(
            [json.dumps({"type": "register", "room_id": "r", "peer_id": "mallory"}), forged]
        )

        await relay.handler(mallory_ws)

        relayed = [json.loads(raw) for raw in bob_ws.sent]
        assert [(m["type"], m["from"], m["room_id"]) for m in relayed] == [
            (MSG_LEAVE, "mallory", "r"),
            (MSG_LEAVE, "mallory", "r"),
        ]

    @pytest.mark.asyncio
    async def test_second_register_is_rejected(self):
        relay = SignalingRelay()
        bob_ws = FakeWebSocket()
        relay.rooms["r1"] = {"bob": bob_ws}
        alice_ws = FakeWebSocket([
            json.dumps({"type": "register", "room_id": "r1", "peer_id": "alice"}),
            json.dumps({"type": "register", "room_id": "r2", "peer_id": "alice"}),
        ])

        await relay.handler(alice_ws)

        assert json.loads(alice_ws.sent[1]) == {"type": "error", "reason": "already registered"}
        assert relay.rooms == {"r1": {"bob": bob_ws}}
        assert json.loads(bob_ws.sent[-1])["from"] == "alice"
