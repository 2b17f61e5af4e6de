from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Union

import websockets
from websockets.http11 import Request

from server.core.EventTypes import HANDSHAKE_EVENT
from server.identity.verifier import PresentedCredentials
from shared.frame import BadFrameError, Frame
from shared.log import get_logger
from shared.utils import bearer_token, query_param

logger = get_logger(__name__)

RawFrame = Union[str, bytes]


@dataclass
class HandshakeResult:
    """Credentials of one connection attempt plus a first frame that still needs dispatching."""
    credentials: PresentedCredentials
    pending: Optional[RawFrame] = None


def request_credentials(request: Optional[Request]) -> PresentedCredentials:
    """Header and query tokens from the HTTP upgrade request."""
    if request is None:
        return PresentedCredentials()
    return PresentedCredentials(
        header_token=bearer_token(request.headers.get("Authorization")),
        query_token=query_param(request.path, "token"),
    )


def handshake_token(frame: Frame) -> Optional[str]:
    token = frame.data.get("token")
    if isinstance(token, str) and token:
        return token
    return None


def as_handshake(raw: RawFrame) -> Optional[Frame]:
    """The parsed frame if ``raw`` is a handshake, else None."""
    try:
        frame = Frame.from_json(raw)
    except BadFrameError:
        return None
    if frame.event != HANDSHAKE_EVENT:
        return None
    return frame


async def read_first_frame(websocket: websockets.ServerConnection, timeout: float) -> Optional[RawFrame]:
    """
    Wait for the client's first frame.

    Returns None on timeout. ConnectionClosed propagates.
    """
    try:
        return await asyncio.wait_for(websocket.recv(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("No first frame within %.1fs", timeout)
        return None


async def collect_credentials(websocket: websockets.ServerConnection, timeout: float) -> HandshakeResult:
    """
    Gather tokens from all three presentation channels of one connection attempt.

    A first frame that is not a handshake is returned as ``pending`` so it can
    be dispatched once the connection is registered.
    """
    from_request = request_credentials(getattr(websocket, "request", None))
    raw = await read_first_frame(websocket, timeout)
    frame = as_handshake(raw) if raw is not None else None
    if raw is not None and frame is None:
        logger.debug("First frame is not a handshake; holding it until registration")

    credentials = PresentedCredentials(
        handshake_token=handshake_token(frame) if frame is not None else None,
        header_token=from_request.header_token,
        query_token=from_request.query_token,
    )
    return HandshakeResult(credentials, pending=raw if frame is None else None)
