import asyncio
import json

import pytest
import websockets

from client.ws_client import ClientSession, HandshakeRejected
from server.core.MessageRecord import MessageStatus
from tests.support import make_token, wait_for


async def _session(url, user_id, channel="handshake"):
    session = ClientSession(url, make_token(user_id), channel=channel)
    await session.connect()
    return session


async def _expect_rejection(ws):
    reply = json.loads(await ws.recv())
    with pytest.raises(websockets.exceptions.ConnectionClosed) as exc:
        await ws.recv()
    return reply, exc.value.rcvd


@pytest.mark.parametrize("channel", ["handshake", "header", "query"])
@pytest.mark.asyncio
async def test_every_credential_channel_registers(relay, relay_url, channel):
    session = ClientSession(relay_url, make_token("alice"), channel=channel)
    user_id = await session.connect()
    try:
        assert user_id == "alice"
        assert session.connection_id
        assert await wait_for(lambda: relay.presence.is_online("alice"))
        assert relay.presence.resolve("alice").connection_id == session.connection_id
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_missing_token_is_rejected_with_reason(relay, relay_url):
    async with websockets.connect(relay_url) as ws:
        await ws.send(json.dumps({"event": "handshake", "data": {}}))
        reply, close = await _expect_rejection(ws)

    assert reply == {"event": "connect_error", "data": {"message": "Authentication error: No token provided"}}
    assert close.code == 1008
    assert close.reason == "Authentication error: No token provided"
    assert len(relay.presence) == 0


@pytest.mark.asyncio
async def test_invalid_token_is_rejected_with_reason(relay, relay_url):
    async with websockets.connect(relay_url) as ws:
        await ws.send(json.dumps({"event": "handshake", "data": {"token": make_token("alice", secret="wrong")}}))
        reply, close = await _expect_rejection(ws)

    assert reply["data"]["message"] == "Authentication error: Invalid token"
    assert close.code == 1008
    assert len(relay.presence) == 0


@pytest.mark.asyncio
async def test_silent_client_times_out_unauthenticated(relay, relay_url):
    async with websockets.connect(relay_url) as ws:
        reply, close = await _expect_rejection(ws)
    assert reply["event"] == "connect_error"
    assert close.code == 1008


@pytest.mark.asyncio
async def test_client_session_surfaces_rejection(relay, relay_url):
    session = ClientSession(relay_url, make_token("alice", secret="wrong"))
    with pytest.raises(HandshakeRejected) as exc:
        await session.connect()
    assert exc.value.reason == "Authentication error: Invalid token"


@pytest.mark.asyncio
async def test_message_delivery_and_read_receipt(relay, relay_url):
    alice = await _session(relay_url, "alice")
    bob = await _session(relay_url, "bob", channel="header")
    try:
        await alice.send_message("bob", "hi")

        incoming = await bob.recv(timeout=2)
        assert incoming.event == "new_message"
        assert incoming.data["sender"] == {"_id": "alice"}
        assert incoming.data["content"] == "hi"

        sent = await alice.recv(timeout=2)
        assert sent.event == "message_sent"
        assert sent.data["status"] == "delivered"

        message_id = incoming.data["_id"]
        assert (await relay.ledger.get(message_id)).status is MessageStatus.DELIVERED

        await bob.mark_read(message_id)
        status = await alice.recv(timeout=2)
        assert status.event == "message_status"
        assert status.data == {"messageId": message_id, "status": "read"}
        assert (await relay.ledger.get(message_id)).status is MessageStatus.READ
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_call_setup_is_relayed(relay, relay_url):
    alice = await _session(relay_url, "alice")
    bob = await _session(relay_url, "bob")
    try:
        await alice.request_call("bob", "video")
        incoming = await bob.recv(timeout=2)
        assert incoming.event == "incoming_call"
        assert incoming.data == {"callerId": "alice", "mode": "video"}

        await bob.answer_call("alice", accept=True)
        accepted = await alice.recv(timeout=2)
        assert accepted.data == {"accepterId": "bob"}

        offer = {"type": "offer", "sdp": "v=0"}
        await alice.emit("webrtc_offer", {"targetUserId": "bob", "offer": offer})
        forwarded = await bob.recv(timeout=2)
        assert forwarded.event == "webrtc_offer"
        assert forwarded.data == {"callerId": "alice", "offer": offer}
    finally:
        await alice.close()
        await bob.close()


@pytest.mark.asyncio
async def test_second_login_displaces_first(relay, relay_url):
    first = await _session(relay_url, "alice")
    second = await _session(relay_url, "alice")
    try:
        notice = await first.recv(timeout=2)
        assert notice.event == "session_replaced"
        assert notice.data == {"connectionId": second.connection_id}

        with pytest.raises(websockets.exceptions.ConnectionClosed) as exc:
            await first.recv(timeout=2)
        assert exc.value.rcvd.code == 4000

        # The displaced connection's own cleanup must not evict the newer one
        assert await wait_for(lambda: len(relay.connections) == 1)
        assert relay.presence.resolve("alice").connection_id == second.connection_id

        bob = await _session(relay_url, "bob")
        try:
            await bob.send_message("alice", "still there?")
            incoming = await second.recv(timeout=2)
            assert incoming.event == "new_message"
        finally:
            await bob.close()
    finally:
        await first.close()
        await second.close()


@pytest.mark.asyncio
async def test_disconnect_deregisters(relay, relay_url):
    alice = await _session(relay_url, "alice")
    assert await wait_for(lambda: relay.presence.is_online("alice"))

    await alice.close()

    assert await wait_for(lambda: not relay.presence.is_online("alice"))
    assert await wait_for(lambda: len(relay.connections) == 0)


@pytest.mark.asyncio
async def test_offline_message_is_kept_as_sent(relay, relay_url):
    alice = await _session(relay_url, "alice")
    try:
        await alice.send_message("bob", "later")
        sent = await alice.recv(timeout=2)
        assert sent.data["status"] == "sent"
        stored = await relay.ledger.find_conversation("alice", "bob")
        assert [m.status for m in stored] == [MessageStatus.SENT]
    finally:
        await alice.close()


@pytest.mark.asyncio
async def test_header_client_may_send_a_message_first(relay, relay_url):
    bob = await _session(relay_url, "bob")
    headers = {"Authorization": f"Bearer {make_token('alice')}"}
    try:
        async with websockets.connect(relay_url, additional_headers=headers) as ws:
            await ws.send(json.dumps({"event": "private_message", "data": {"receiverId": "bob", "content": "hi"}}))

            connected = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))
            assert connected["event"] == "connected"
            assert connected["data"]["userId"] == "alice"

            sent = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))
            assert sent["event"] == "message_sent"
            assert sent["data"]["status"] == "delivered"

        incoming = await bob.recv(timeout=2)
        assert incoming.event == "new_message"
        assert incoming.data["content"] == "hi"
        assert len(await relay.ledger.find_conversation("alice", "bob")) == 1
    finally:
        await bob.close()


@pytest.mark.asyncio
async def test_query_client_gets_error_for_unparsable_first_frame(relay, relay_url):
    async with websockets.connect(f"{relay_url}/?token={make_token('alice')}") as ws:
        await ws.send("not json")

        connected = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))
        assert connected["event"] == "connected"

        error = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))
        assert error["event"] == "error"
        assert error["data"]["error"] == "Invalid frame"


@pytest.mark.asyncio
async def test_listen_reconnects_after_abnormal_close(relay, relay_url):
    session = await _session(relay_url, "alice")
    first_id = session.connection_id
    listener = asyncio.create_task(session.listen(max_retries=3, base_delay=0.01))
    try:
        assert await wait_for(lambda: relay.presence.is_online("alice"))
        await relay.presence.resolve("alice").close(code=1011, reason="restart")

        assert await wait_for(lambda: session.connection_id != first_id)
        assert await wait_for(
            lambda: relay.presence.is_online("alice")
            and relay.presence.resolve("alice").connection_id == session.connection_id
        )
    finally:
        await session.close()
        await asyncio.wait_for(listener, timeout=2)


@pytest.mark.asyncio
async def test_listen_stops_when_session_is_replaced(relay, relay_url):
    first = await _session(relay_url, "alice")
    events = []

    async def collect(frame):
        events.append(frame.event)

    listener = asyncio.create_task(first.listen(collect, base_delay=0.01))
    second = await _session(relay_url, "alice")
    try:
        await asyncio.wait_for(listener, timeout=2)
        assert events == ["session_replaced"]
        assert relay.presence.resolve("alice").connection_id == second.connection_id
    finally:
        await first.close()
        await second.close()
