from __future__ import annotations


class RelayError(Exception):
    """Base class for failures a relay operation reports to its caller."""
    pass


class AuthenticationError(RelayError):
    """Connection attempt rejected; ``reason`` is the exact text sent to the client."""
    reason = "Authentication error"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.reason)
        self.detail = detail


class Unauthenticated(AuthenticationError):
    reason = "Authentication error: No token provided"


class InvalidCredential(AuthenticationError):
    reason = "Authentication error: Invalid token"


class EmptyContent(RelayError):
    """Message content is empty after trimming."""
    pass


class PersistenceError(RelayError):
    """The message store could not complete the operation."""
    pass


class NotFound(RelayError):
    """No message with the given identifier (or none the caller may touch)."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class InvalidPayload(RelayError):
    """Inbound event payload is missing fields or has the wrong types."""
    pass
