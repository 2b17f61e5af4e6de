"""
Plain HTTP routes served on the relay port before the WebSocket upgrade.

- GET /health                -> {"status": "ok", "connections": n}
- GET /messages/<userId>     -> conversation between the bearer and <userId>, oldest first

Any other path returns None from ``process_request`` so the upgrade
proceeds as usual.
"""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import unquote, urlsplit

from websockets.datastructures import Headers
from websockets.http11 import Request, Response

from server.core.errors import AuthenticationError, PersistenceError
from server.identity.verifier import PresentedCredentials
from shared.log import get_logger
from shared.utils import bearer_token

if TYPE_CHECKING:
    from server.server import RelayServer

logger = get_logger(__name__)

HEALTH_PATH = "/health"
HISTORY_PREFIX = "/messages/"


def json_response(status: HTTPStatus, body: Any) -> Response:
    payload = json.dumps(body, separators=(",", ":")).encode("utf-8")
    headers = Headers([
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(payload))),
        ("Connection", "close"),
    ])
    return Response(status.value, status.phrase, headers, payload)


class HttpRoutes:

    def __init__(self, server: "RelayServer"):
        self.server = server

    async def process_request(self, connection: Any, request: Request) -> Optional[Response]:
        """``process_request`` hook for ``websockets.serve``."""
        path = urlsplit(request.path).path
        if path == HEALTH_PATH:
            return json_response(HTTPStatus.OK, self.server.get_health())
        if path.startswith(HISTORY_PREFIX):
            peer_id = unquote(path[len(HISTORY_PREFIX):])
            return await self.history(request, peer_id)
        return None

    async def history(self, request: Request, peer_id: str) -> Response:
        if not peer_id or "/" in peer_id:
            return json_response(HTTPStatus.NOT_FOUND, {"message": "Not found"})

        credentials = PresentedCredentials(header_token=bearer_token(request.headers.get("Authorization")))
        try:
            user_id = self.server.verifier.verify(credentials)
        except AuthenticationError as e:
            logger.info("History request rejected: %s", e.reason)
            return json_response(HTTPStatus.UNAUTHORIZED, {"message": e.reason})

        try:
            messages = await self.server.ledger.find_conversation(user_id, peer_id)
        except PersistenceError as e:
            logger.error("History fetch failed: %s", e, extra={"user_id": user_id})
            return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {"message": "Error fetching messages"})

        logger.debug("Served %d messages with %s", len(messages), peer_id, extra={"user_id": user_id})
        return json_response(HTTPStatus.OK, [m.to_dict() for m in messages])
