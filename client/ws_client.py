from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from shared.frame import BadFrameError, Frame, create_frame
from shared.log import get_logger

logger = get_logger(__name__)


FrameHandler = Callable[[Frame], Awaitable[None]]

# Ways the session can present its token to the relay
CHANNELS = ("handshake", "header", "query")

# Close codes after which the session does not reconnect
NORMAL_CLOSURE = 1000
SESSION_REPLACED = 4000


class HandshakeRejected(Exception):
    """The relay answered the handshake with ``connect_error``."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def _with_query_token(url: str, token: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    return urlunsplit(parts._replace(query=query + urlencode({"token": token})))


class ClientSession:
    """
    Relay client session managing the WebSocket connection and event handlers.

    ``connect`` performs the handshake and returns the user id the relay
    verified; events are then sent with ``emit`` and received through
    handlers registered with ``on``.
    """

    def __init__(self, server_ws_url: str, token: str, channel: str = "handshake") -> None:
        if channel not in CHANNELS:
            raise ValueError(f"channel must be one of {CHANNELS}")
        self.server_ws_url = server_ws_url
        self.token = token
        self.channel = channel
        self.websocket: Optional[websockets.ClientConnection] = None
        self.handlers: Dict[str, FrameHandler] = {}
        self.user_id: Optional[str] = None
        self.connection_id: Optional[str] = None

    async def connect(self) -> str:
        """
        Open the socket and complete the handshake.

        Raises:
            HandshakeRejected: the relay refused the credentials
        """
        url = self.server_ws_url
        headers = None
        if self.channel == "header":
            headers = {"Authorization": f"Bearer {self.token}"}
        elif self.channel == "query":
            url = _with_query_token(url, self.token)

        self.websocket = await websockets.connect(
            url, additional_headers=headers, ping_interval=15, ping_timeout=45
        )

        handshake_data = {"token": self.token} if self.channel == "handshake" else {}
        await self.websocket.send(create_frame("handshake", handshake_data).to_json())

        try:
            reply = Frame.from_json(await self.websocket.recv())
        except websockets.exceptions.ConnectionClosed as e:
            raise HandshakeRejected(e.rcvd.reason if e.rcvd else "Connection closed") from e

        if reply.event == "connect_error":
            await self.close()
            raise HandshakeRejected(reply.data.get("message", "Authentication error"))
        if reply.event != "connected":
            await self.close()
            raise HandshakeRejected(f"Unexpected handshake reply: {reply.event}")

        self.user_id = reply.data.get("userId")
        self.connection_id = reply.data.get("connectionId")
        logger.info("Connected as %s", self.user_id)
        return self.user_id

    async def emit(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        assert self.websocket is not None
        await self.websocket.send(create_frame(event, data).to_json())

    # Convenience wrappers for the relay's inbound events

    async def send_message(self, receiver_id: str, content: str) -> None:
        await self.emit("private_message", {"receiverId": receiver_id, "content": content})

    async def mark_read(self, message_id: str) -> None:
        await self.emit("mark_read", {"messageId": message_id})

    async def request_call(self, target_id: str, mode: str = "voice") -> None:
        await self.emit("call_request", {"targetUserId": target_id, "mode": mode})

    async def answer_call(self, target_id: str, accept: bool = True) -> None:
        await self.emit("call_accepted" if accept else "call_rejected", {"targetUserId": target_id})

    async def end_call(self, target_id: str) -> None:
        await self.emit("call_ended", {"targetUserId": target_id})

    def on(self, event: str, handler: FrameHandler) -> None:
        self.handlers[event] = handler

    async def recv(self, timeout: Optional[float] = None) -> Frame:
        """Receive one frame directly (bypasses handlers)."""
        assert self.websocket is not None
        raw = await asyncio.wait_for(self.websocket.recv(), timeout=timeout)
        return Frame.from_json(raw)

    async def recv_loop(self, default_handler: Optional[FrameHandler] = None) -> None:
        assert self.websocket is not None
        async for raw in self.websocket:
            try:
                frame = Frame.from_json(raw)
            except BadFrameError as e:
                logger.error("Failed to parse inbound frame: %s", e)
                continue
            handler = self.handlers.get(frame.event, default_handler)
            if handler:
                try:
                    await handler(frame)
                except Exception as e:
                    logger.error("Handler for %s failed: %s", frame.event, e)

    async def close(self) -> None:
        if self.websocket:
            await self.websocket.close(code=1000)

    async def listen(
        self,
        default_handler: Optional[FrameHandler] = None,
        max_retries: int = 5,
        base_delay: float = 1.0,
    ) -> None:
        """
        Dispatch inbound frames, reconnecting when the link drops.

        Returns once the session is closed normally, replaced by a newer
        login, refused on reconnect, or out of retries.
        """
        while True:
            try:
                await self.recv_loop(default_handler)
            except websockets.exceptions.ConnectionClosedError as e:
                logger.warning(f"Connection lost: {e}")

            code = self.websocket.close_code if self.websocket else None
            if code in (NORMAL_CLOSURE, SESSION_REPLACED):
                return
            try:
                if not await self.reconnect(max_retries, base_delay):
                    logger.error("Giving up after %d reconnect attempts", max_retries)
                    return
            except HandshakeRejected as e:
                logger.error("Relay refused reconnect: %s", e.reason)
                return

    async def reconnect(self, max_retries: int = 5, base_delay: float = 1.0) -> bool:
        """Reconnect with exponential backoff"""
        for attempt in range(max_retries):
            try:
                delay = base_delay * (2 ** attempt)
                logger.info(f"Reconnecting in {delay}s (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(delay)
                await self.connect()
                return True
            except HandshakeRejected:
                raise
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Reconnect attempt {attempt + 1} failed: {e}")
        return False
