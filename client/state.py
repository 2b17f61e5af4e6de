from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class IncomingCall:
    caller_id: str
    mode: str


@dataclass
class ChatState:
    """What the interactive client has seen: messages by id and the pending call."""
    user_id: str
    messages: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    incoming_call: Optional[IncomingCall] = None
    active_peer: Optional[str] = None

    def record(self, message: Dict[str, Any]) -> None:
        message_id = message.get("_id")
        if message_id:
            self.messages[message_id] = message

    def set_status(self, message_id: str, status: str) -> None:
        if message_id in self.messages:
            self.messages[message_id]["status"] = status

    def unread_from(self, peer_id: Optional[str] = None) -> List[str]:
        """Ids of received messages not yet marked read, oldest first."""
        unread = []
        for message in sorted(self.messages.values(), key=lambda m: m.get("createdAt", "")):
            sender = message.get("sender")
            sender_id = sender.get("_id") if isinstance(sender, dict) else sender
            if sender_id == self.user_id or message.get("status") == "read":
                continue
            if peer_id is None or sender_id == peer_id:
                unread.append(message["_id"])
        return unread

    def take_call(self) -> Optional[IncomingCall]:
        call, self.incoming_call = self.incoming_call, None
        return call
