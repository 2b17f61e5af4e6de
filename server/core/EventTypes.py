from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Set


class InboundEvent(str, Enum):
    """Events a registered client may emit."""

    # Messaging
    PRIVATE_MESSAGE = "private_message"
    MARK_READ = "mark_read"

    # Call lifecycle
    CALL_REQUEST = "call_request"
    CALL_ACCEPTED = "call_accepted"
    CALL_REJECTED = "call_rejected"
    CALL_ENDED = "call_ended"

    # Media negotiation (opaque payloads)
    WEBRTC_OFFER = "webrtc_offer"
    WEBRTC_ANSWER = "webrtc_answer"
    WEBRTC_ICE_CANDIDATE = "webrtc_ice_candidate"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if string is a valid inbound event."""
        try:
            cls(value)
            return True
        except ValueError:
            return False


class OutboundEvent(str, Enum):
    """Events the relay pushes to clients."""

    # Handshake
    CONNECTED = "connected"
    CONNECT_ERROR = "connect_error"
    SESSION_REPLACED = "session_replaced"

    # Messaging
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_STATUS = "message_status"
    MESSAGE_ERROR = "message_error"

    # Call lifecycle
    INCOMING_CALL = "incoming_call"
    CALL_ACCEPTED = "call_accepted"
    CALL_REJECTED = "call_rejected"
    CALL_ENDED = "call_ended"

    # Media negotiation
    WEBRTC_OFFER = "webrtc_offer"
    WEBRTC_ANSWER = "webrtc_answer"
    WEBRTC_ICE_CANDIDATE = "webrtc_ice_candidate"

    # Frames that could not be dispatched
    ERROR = "error"


# First frame a client sends after the upgrade
HANDSHAKE_EVENT = "handshake"


class ConnectionState(str, Enum):
    """Lifecycle of one connection handle."""
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    REGISTERED = "registered"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATING, ConnectionState.CLOSED},
    ConnectionState.AUTHENTICATING: {ConnectionState.REGISTERED, ConnectionState.CLOSED},
    ConnectionState.REGISTERED: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),
}


@dataclass(frozen=True)
class SignalRoute:
    """How one inbound signaling event is re-emitted to its target.

    ``origin_field`` names the key carrying the sender's user id and
    ``payload_field`` the key forwarded unchanged (None when the event has no payload).
    """
    outbound: OutboundEvent
    origin_field: str
    payload_field: Optional[str] = None


SIGNAL_ROUTES: Dict[InboundEvent, SignalRoute] = {
    InboundEvent.CALL_REQUEST: SignalRoute(OutboundEvent.INCOMING_CALL, "callerId", "mode"),
    InboundEvent.CALL_ACCEPTED: SignalRoute(OutboundEvent.CALL_ACCEPTED, "accepterId"),
    InboundEvent.CALL_REJECTED: SignalRoute(OutboundEvent.CALL_REJECTED, "rejecterId"),
    InboundEvent.CALL_ENDED: SignalRoute(OutboundEvent.CALL_ENDED, "enderId"),
    InboundEvent.WEBRTC_OFFER: SignalRoute(OutboundEvent.WEBRTC_OFFER, "callerId", "offer"),
    InboundEvent.WEBRTC_ANSWER: SignalRoute(OutboundEvent.WEBRTC_ANSWER, "answererId", "answer"),
    InboundEvent.WEBRTC_ICE_CANDIDATE: SignalRoute(OutboundEvent.WEBRTC_ICE_CANDIDATE, "senderId", "candidate"),
}

CALL_MODES: Set[str] = {"voice", "video"}

