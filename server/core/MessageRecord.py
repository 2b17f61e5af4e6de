from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


class MessageStatus(str, Enum):
    """Delivery state of a message. Declaration order is the forward order."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def advance_to(self, requested: MessageStatus) -> MessageStatus:
        """Return the status after applying ``requested``; never moves backwards."""
        return requested if requested.rank > self.rank else self


_STATUS_ORDER = list(MessageStatus)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class Message:
    id: str
    sender: str
    receiver: str
    content: str
    status: MessageStatus = MessageStatus.SENT
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def with_status(self, status: MessageStatus) -> Message:
        """Copy with ``status`` applied under the forward-only rule."""
        new_status = self.status.advance_to(status)
        if new_status is self.status:
            return self
        return replace(self, status=new_status, updated_at=utcnow())

    def involves(self, user_a: str, user_b: str) -> bool:
        return (self.sender, self.receiver) in ((user_a, user_b), (user_b, user_a))

    def to_dict(self) -> Dict[str, Any]:
        """Wire/storage form, keyed like the document store the clients were written against."""
        return {
            "_id": self.id,
            "sender": self.sender,
            "receiver": self.receiver,
            "content": self.content,
            "status": self.status.value,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Message:
        return cls(
            id=data["_id"],
            sender=data["sender"],
            receiver=data["receiver"],
            content=data["content"],
            status=MessageStatus(data.get("status", MessageStatus.SENT.value)),
            created_at=_parse_iso(data["createdAt"]),
            updated_at=_parse_iso(data["updatedAt"]),
        )
