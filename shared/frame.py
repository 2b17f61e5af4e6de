from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import json


class BadFrameError(Exception):
    """Raised when an inbound frame is not a valid relay frame."""
    pass
class UnknownEventError(Exception):
    """Raised when a frame names an event the relay does not handle."""
    pass


@dataclass
class Frame:
    """
    Every frame exchanged over the relay socket uses the shape:
    {
    "event": "STRING",
    "data":  { ... }
    }

    - "event" is case-sensitive and names an inbound or outbound event.
    - "data" is the event payload; a missing "data" is read as {}.
    """
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: str | bytes) -> 'Frame':
        """Parse a text (or UTF-8 binary) frame, validating structure"""
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise BadFrameError(f"Frame is not valid UTF-8: {e}")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise BadFrameError(f"Invalid JSON: {e}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> 'Frame':
        """Create a Frame from a decoded JSON value, validating required fields"""
        if not isinstance(data, dict):
            raise BadFrameError("Frame must be a JSON object")
        if 'event' not in data:
            raise BadFrameError("Missing required field: event")

        event = data['event']
        if not isinstance(event, str) or not event:
            raise BadFrameError("'event' must be a non-empty string")

        payload = data.get('data')
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise BadFrameError("'data' must be an object")

        return cls(event=event, data=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {'event': self.event, 'data': self.data}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)


def create_frame(event: str, data: Optional[Dict[str, Any]] = None) -> Frame:
    """Helper to build an outbound frame"""
    return Frame(event=event, data=dict(data) if data else {})
