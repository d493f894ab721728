"""
Tests for ConnectionLifecycle
=============================
Drives the lifecycle orchestrator with scripted WebSockets: identifier
validation, join/leave announcements, signaling and chat routing, and the
failure paths that must never take a connection down.
"""

import asyncio
import json

import pytest

from session_relay.api.connection_registry import ConnectionState, RegistryKey
from session_relay.api.websocket.lifecycle.connection_lifecycle import ConnectionLifecycle
from session_relay.api.websocket.services.chat_writer import ChatWriter
from tests.fixtures import FailingChatStore, GatedChatStore, MockWebSocket


OFFER = {"type": "offer", "sdp": {"type": "offer", "sdp": "v=0\r\no=- 46117317 2 IN IP4 127.0.0.1"}}


async def settle(rounds: int = 20):
    """Let scheduled tasks run until the event loop is quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def client(session_id: str, user_id: str) -> MockWebSocket:
    return MockWebSocket({"sessionId": session_id, "userId": user_id})


async def join(lifecycle: ConnectionLifecycle, websocket: MockWebSocket) -> asyncio.Task:
    task = asyncio.create_task(lifecycle.handle_client_connection(websocket))
    await settle()
    return task


async def leave(websocket: MockWebSocket, task: asyncio.Task):
    websocket.feed_disconnect()
    await task
    await settle()


class TestIdentifierValidation:
    """Connections without both identifiers are rejected"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [
        {},
        {"sessionId": "s1"},
        {"userId": "u1"},
        {"sessionId": "", "userId": "u1"},
        {"sessionId": "s1", "userId": ""},
    ])
    async def test_missing_identifiers_closed_with_policy_violation(self, lifecycle, registry, params):
        ws = MockWebSocket(params)

        await lifecycle.handle_client_connection(ws)

        assert ws.close_calls == [(1008, "Missing sessionId or userId")]
        assert ws.sent == []
        assert await registry.count() == 0
        assert lifecycle.get_stats()["total_connections_rejected"] == 1

    @pytest.mark.asyncio
    async def test_custom_policy_violation_code(self, registry, router, chat_writer, mock_logger):
        lifecycle = ConnectionLifecycle(registry, router, chat_writer, policy_violation_code=4000, logger=mock_logger)
        ws = MockWebSocket({})

        await lifecycle.handle_client_connection(ws)

        assert ws.close_calls[0][0] == 4000


class TestJoinAndLeave:
    """Presence announcements"""

    @pytest.mark.asyncio
    async def test_first_joiner_gets_no_participant(self, lifecycle, registry):
        a = client("s1", "a")

        task = await join(lifecycle, a)

        assert a.sent_json() == [{"type": "no-participant"}]
        assert await registry.get(RegistryKey("a", "s1")) is not None

        await leave(a, task)
        assert await registry.count() == 0

    @pytest.mark.asyncio
    async def test_second_joiner_announced_to_first(self, lifecycle):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)

        task_b = await join(lifecycle, b)

        assert a.sent_json() == [{"type": "no-participant"}, {"type": "participant-joined", "userId": "b"}]
        assert b.sent == []

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_leave_announced_to_remaining_peer(self, lifecycle, registry):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)

        await leave(a, task_a)

        assert b.sent_json() == [{"type": "participant-left", "userId": "a"}]
        assert await registry.list_by_session("s1") != []

        await leave(b, task_b)
        # Last one out: nobody to tell, and no notice to a departed sender
        assert b.sent_json() == [{"type": "participant-left", "userId": "a"}]
        assert await registry.count() == 0

    @pytest.mark.asyncio
    async def test_leave_runs_once(self, lifecycle, registry):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)
        connection_a = await registry.get(RegistryKey("a", "s1"))

        await leave(a, task_a)
        await lifecycle._leave(connection_a, "closed")
        await settle()

        assert b.sent_json().count({"type": "participant-left", "userId": "a"}) == 1
        assert connection_a.state is ConnectionState.CLOSED

        await leave(b, task_b)

    @pytest.mark.asyncio
    async def test_superseded_connection_does_not_announce_leave(self, lifecycle, registry):
        """A reconnect replaces the stale socket; the stale socket closing is silent"""
        peer = client("s1", "peer")
        stale = client("s1", "a")
        fresh = client("s1", "a")
        task_peer = await join(lifecycle, peer)
        task_stale = await join(lifecycle, stale)
        task_fresh = await join(lifecycle, fresh)

        assert stale.close_calls == [(1000, "Replaced by new connection")]
        assert fresh.close_calls == []

        await leave(stale, task_stale)

        joined = {"type": "participant-joined", "userId": "a"}
        assert peer.sent_json() == [{"type": "no-participant"}, joined, joined]
        registered = await registry.get(RegistryKey("a", "s1"))
        assert registered is not None and registered.websocket is fresh

        await leave(fresh, task_fresh)
        assert peer.sent_json()[-1] == {"type": "participant-left", "userId": "a"}

        await leave(peer, task_peer)

    @pytest.mark.asyncio
    async def test_replaced_connection_stops_relaying(self, lifecycle, registry):
        """Frames arriving on a replaced socket are not forwarded"""
        peer = client("s1", "peer")
        stale = client("s1", "a")
        fresh = client("s1", "a")
        task_peer = await join(lifecycle, peer)
        task_stale = await join(lifecycle, stale)
        task_fresh = await join(lifecycle, fresh)
        before = list(peer.sent)

        stale.feed_json(OFFER)
        await settle()

        assert task_stale.done()
        assert peer.sent == before
        registered = await registry.get(RegistryKey("a", "s1"))
        assert registered.websocket is fresh

        await leave(fresh, task_fresh)
        await leave(peer, task_peer)

    @pytest.mark.asyncio
    async def test_transport_error_treated_as_close(self, lifecycle, registry, mock_logger):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)

        b.receive_error = ConnectionResetError("connection reset by peer")
        await lifecycle.handle_client_connection(b)
        await settle()

        assert a.sent_json()[-2:] == [
            {"type": "participant-joined", "userId": "b"},
            {"type": "participant-left", "userId": "b"},
        ]
        assert await registry.get(RegistryKey("b", "s1")) is None
        logged_events = [call[0][0] for call in mock_logger.error.call_args_list]
        assert "connection_lifecycle.transport_error" in logged_events

        await leave(a, task_a)


class TestSignalingRelay:
    """Offers, answers and candidates are forwarded verbatim"""

    @pytest.mark.asyncio
    async def test_offer_forwarded_unmodified(self, lifecycle, chat_store):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)
        raw = json.dumps(OFFER)

        b.feed_text(raw)
        await settle()

        assert a.sent_json()[-1] == OFFER
        assert b.sent == []
        assert await chat_store.load_notes("s1") == []

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_answer_and_candidate_forwarded(self, lifecycle):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)
        answer = {"type": "answer", "sdp": {"type": "answer", "sdp": "v=0"}}
        candidate = {"type": "ice-candidate", "candidate": {"candidate": "candidate:1", "sdpMid": "0"}}

        a.feed_json(answer)
        a.feed_json(candidate)
        await settle()

        assert b.sent_json() == [answer, candidate]

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_binary_frame_handled_as_text(self, lifecycle):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)

        b.feed_bytes(json.dumps(OFFER).encode("utf-8"))
        await settle()

        assert a.sent_json()[-1] == OFFER

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_offer_while_alone_gets_no_participant(self, lifecycle):
        a = client("s1", "a")
        task_a = await join(lifecycle, a)

        a.feed_json(OFFER)
        await settle()

        assert a.sent_json() == [{"type": "no-participant"}, {"type": "no-participant"}]

        await leave(a, task_a)


class TestChatRelay:
    """Chat is persisted and forwarded"""

    @pytest.mark.asyncio
    async def test_chat_persisted_and_forwarded(self, lifecycle, chat_store):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)

        a.feed_text('{"type":"chat","message":"hello"}')
        await settle()

        assert b.sent == ['{"type":"chat","message":"hello"}']
        assert await chat_store.load_notes("s1") == ["hello"]

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_chat_while_alone_is_persisted(self, lifecycle, chat_store):
        a = client("s1", "a")
        task_a = await join(lifecycle, a)

        a.feed_json({"type": "chat", "message": "anyone?"})
        await settle()

        assert await chat_store.load_notes("s1") == ["anyone?"]
        assert a.sent_json() == [{"type": "no-participant"}, {"type": "no-participant"}]

        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_chat_delivered_when_store_fails(self, registry, router, mock_logger):
        """Persistence failure never blocks delivery or drops the connection"""
        store = FailingChatStore()
        lifecycle = ConnectionLifecycle(registry, router, ChatWriter(store, logger=mock_logger), logger=mock_logger)
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)

        a.feed_json({"type": "chat", "message": "still here"})
        await settle()

        assert store.attempts == [("s1", "still here")]
        assert b.sent_json() == [{"type": "chat", "message": "still here"}]
        assert not task_a.done()
        logged_events = [call[0][0] for call in mock_logger.warning.call_args_list]
        assert "connection_lifecycle.chat_persist_failed" in logged_events

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_cancelled_connection_finishes_chat_append(self, registry, router, mock_logger):
        store = GatedChatStore()
        lifecycle = ConnectionLifecycle(registry, router, ChatWriter(store, logger=mock_logger), logger=mock_logger)
        a = client("s1", "a")
        task_a = await join(lifecycle, a)

        a.feed_json({"type": "chat", "message": "in flight"})
        await store.started.wait()
        task_a.cancel()
        await settle()
        store.release()

        with pytest.raises(asyncio.CancelledError):
            await task_a

        assert await store.load_notes("s1") == ["in flight"]
        assert await registry.count() == 0


class TestMalformedInput:
    """Bad frames are dropped without closing the connection"""

    @pytest.mark.asyncio
    async def test_decode_error_is_not_fatal(self, lifecycle, mock_logger):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)

        b.feed_text("{not json")
        b.feed_text('["offer"]')
        b.feed_json(OFFER)
        await settle()

        assert a.sent_json()[-1] == OFFER
        assert not task_b.done()
        assert lifecycle.get_stats()["total_decode_errors"] == 2
        logged_events = [call[0][0] for call in mock_logger.warning.call_args_list]
        assert "connection_lifecycle.decode_error" in logged_events

        await leave(b, task_b)
        await leave(a, task_a)

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, lifecycle, chat_store):
        a = client("s1", "a")
        b = client("s1", "b")
        task_a = await join(lifecycle, a)
        task_b = await join(lifecycle, b)
        before = list(a.sent)

        b.feed_json({"type": "participant-joined", "userId": "spoofed"})
        b.feed_json({"type": "renegotiate"})
        await settle()

        assert a.sent == before
        assert b.sent == []
        assert await chat_store.load_notes("s1") == []
        assert lifecycle.get_stats()["total_messages_processed"] == 0

        await leave(b, task_b)
        await leave(a, task_a)
