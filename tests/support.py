import asyncio
import json
from typing import Any, Dict, List, Optional

import websockets

from server.core.ConnectionLink import ConnectionLink
from server.core.EventTypes import ConnectionState
from shared.crypto.tokens import issue_token

SECRET = "test-secret"


def make_token(user_id: str, secret: str = SECRET, **kwargs: Any) -> str:
    return issue_token(user_id, secret, **kwargs)


class DummyWebSocket:
    """Stands in for a ServerConnection: records frames and close calls."""

    def __init__(self, remote_address=("127.0.0.1", 50000)) -> None:
        self.sent_messages: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.remote_address = remote_address
        self.request = None

    async def send(self, data: str) -> None:
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        self.sent_messages.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent_messages]

    def events(self) -> List[str]:
        return [f["event"] for f in self.frames()]

    def last(self, event: str) -> Optional[Dict[str, Any]]:
        for frame in reversed(self.frames()):
            if frame["event"] == event:
                return frame["data"]
        return None


def registered_link(user_id: str) -> ConnectionLink:
    link = ConnectionLink(DummyWebSocket())
    link.transition(ConnectionState.AUTHENTICATING)
    link.authenticate(user_id)
    return link


async def wait_for(predicate, timeout: float = 3.0) -> bool:
    end = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()
