from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, Optional

import websockets

from shared.frame import Frame, create_frame
from shared.log import get_logger
from server.core.EventTypes import ALLOWED_TRANSITIONS, ConnectionState, OutboundEvent
from server.core.MessageRecord import utcnow
from server.identity.ids import generate_connection_id

logger = get_logger(__name__)


class IllegalTransition(RuntimeError):
    pass


class ConnectionLink:
    """Wrapper around one live WebSocket connection with its lifecycle metadata.

    The lifecycle manager owns the link; the presence directory only
    references it. ``user_id`` is set once authentication succeeds.
    """

    def __init__(self, websocket: websockets.ServerConnection, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id: str = connection_id or generate_connection_id()
        self.user_id: Optional[str] = None
        self.created_at: datetime = utcnow()
        self.last_seen: float = time.monotonic()
        self.state: ConnectionState = ConnectionState.CONNECTING

    def __repr__(self) -> str:
        return f"ConnectionLink({self.connection_id[:8]}, user={self.user_id}, state={self.state.value})"

    @property
    def is_registered(self) -> bool:
        return self.state is ConnectionState.REGISTERED

    @property
    def log_context(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "connection_id": self.connection_id}

    def transition(self, new_state: ConnectionState) -> None:
        """Move along Connecting -> Authenticating -> Registered -> Closed."""
        if new_state is self.state and new_state is ConnectionState.CLOSED:
            return
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {new_state.value} not allowed")
        logger.debug("State %s -> %s", self.state.value, new_state.value, extra=self.log_context)
        self.state = new_state

    def authenticate(self, user_id: str) -> None:
        self.user_id = user_id
        self.transition(ConnectionState.REGISTERED)

    async def send_frame(self, frame: Frame) -> bool:
        """Write a frame; False when the transport is already gone."""
        try:
            await self.websocket.send(frame.to_json())
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Connection closed while sending %s", frame.event, extra=self.log_context)
            return False
        logger.debug("Sent %s", frame.event, extra=self.log_context)
        return True

    async def send_event(self, event: OutboundEvent | str, data: Optional[Dict[str, Any]] = None) -> bool:
        name = event.value if isinstance(event, OutboundEvent) else event
        return await self.send_frame(create_frame(name, data))

    async def send_error(self, error: str, details: str, *, event: OutboundEvent = OutboundEvent.ERROR) -> bool:
        """Send an ``{error, details}`` frame (``error`` or ``message_error``)."""
        return await self.send_event(event, {"error": error, "details": details})

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        """Close the WebSocket connection"""
        self.transition(ConnectionState.CLOSED)
        try:
            await self.websocket.close(code=code, reason=reason or "")
        except websockets.exceptions.ConnectionClosed:
            pass
