import json

import pytest

from server.config import RelayConfig
from server.core.errors import PersistenceError
from server.server import RelayServer
from server.storage import InMemoryMessageLedger
from tests.support import SECRET, registered_link


class FailingLedger(InMemoryMessageLedger):
    async def append(self, sender_id, receiver_id, content):
        raise PersistenceError("store unavailable")


@pytest.fixture
def server():
    return RelayServer(RelayConfig(jwt_secret=SECRET, ledger_backend="memory"), ledger=InMemoryMessageLedger())


def _connect(server, user_id):
    link = registered_link(user_id)
    server.presence.register(user_id, link)
    return link


def _frame(event, **data):
    return json.dumps({"event": event, "data": data})


@pytest.mark.asyncio
async def test_private_message_round_trip(server):
    alice = _connect(server, "alice")
    bob = _connect(server, "bob")

    await server.process_message(alice, _frame("private_message", receiverId="bob", content="hi"))

    assert bob.websocket.events() == ["new_message"]
    assert alice.websocket.last("message_sent")["status"] == "delivered"


@pytest.mark.asyncio
async def test_bad_json_yields_error_event(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, "{oops")
    assert alice.websocket.last("error")["error"] == "Invalid frame"


@pytest.mark.asyncio
async def test_unknown_event_yields_error_event(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("group_message", text="x"))
    error = alice.websocket.last("error")
    assert error == {"error": "Unknown event", "details": "Unknown event: group_message"}


@pytest.mark.asyncio
async def test_empty_content_yields_message_error(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("private_message", receiverId="bob", content="  "))
    assert alice.websocket.last("message_error")["error"] == "Message content cannot be empty"
    assert len(server.ledger) == 0


@pytest.mark.asyncio
async def test_malformed_private_message_yields_message_error(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("private_message", content="hi"))
    await server.process_message(alice, _frame("private_message", receiverId="bob", content=42))
    errors = [f["data"]["error"] for f in alice.websocket.frames() if f["event"] == "message_error"]
    assert errors == ["Invalid message payload", "Invalid message payload"]


@pytest.mark.asyncio
async def test_persistence_failure_yields_message_error_and_keeps_connection():
    server = RelayServer(RelayConfig(jwt_secret=SECRET, ledger_backend="memory"), ledger=FailingLedger())
    alice = _connect(server, "alice")

    await server.process_message(alice, _frame("private_message", receiverId="bob", content="hi"))

    error = alice.websocket.last("message_error")
    assert error["error"] == "Failed to send message"
    assert not alice.websocket.closed
    assert server.presence.resolve("alice") is alice


@pytest.mark.asyncio
async def test_mark_read_unknown_message_is_silent(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("mark_read", messageId="nope"))
    assert alice.websocket.sent_messages == []


@pytest.mark.asyncio
async def test_mark_read_by_receiver(server):
    alice = _connect(server, "alice")
    bob = _connect(server, "bob")
    message = await server.ledger.append("alice", "bob", "hi")

    await server.process_message(bob, _frame("mark_read", messageId=message.id))

    assert alice.websocket.last("message_status") == {"messageId": message.id, "status": "read"}
    assert bob.websocket.sent_messages == []


@pytest.mark.asyncio
async def test_call_request_to_offline_user_is_silent(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("call_request", targetUserId="bob", mode="voice"))
    assert alice.websocket.sent_messages == []


@pytest.mark.asyncio
async def test_malformed_signal_is_silent(server):
    alice = _connect(server, "alice")
    _connect(server, "bob")
    await server.process_message(alice, _frame("call_request", targetUserId="bob", mode="fax"))
    assert alice.websocket.sent_messages == []
    assert server.presence.resolve("bob").websocket.sent_messages == []


@pytest.mark.asyncio
async def test_unexpected_handler_error_is_reported(server, monkeypatch):
    alice = _connect(server, "alice")

    async def explode(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(server.messaging, "send", explode)
    await server.process_message(alice, _frame("private_message", receiverId="bob", content="hi"))

    assert alice.websocket.last("error") == {"error": "Internal error", "details": "Failed to process private_message"}


def test_health_counts_registered_users(server):
    _connect(server, "alice")
    _connect(server, "bob")
    assert server.get_health() == {"status": "ok", "connections": 2}
    assert server.get_status()["online_users"] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_status_reports_ledger_stats(server):
    alice = _connect(server, "alice")
    await server.process_message(alice, _frame("private_message", receiverId="bob", content="hi"))

    assert server.get_status()["ledger"] == {"backend": "InMemoryMessageLedger", "messages": 1}
