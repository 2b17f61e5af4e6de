"""
Call signaling relay.

Forwards call lifecycle events and media-negotiation payloads between two
users. No call state is kept: every event is routed on its own, keyed by
the target user, and dropped silently when the target is offline. The
endpoints validate call state themselves once connected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from server.core.EventTypes import CALL_MODES, SIGNAL_ROUTES, InboundEvent, SignalRoute
from server.core.errors import InvalidPayload
from shared.log import get_logger
from shared.utils import is_non_empty_str

if TYPE_CHECKING:
    from server.core.PresenceDirectory import PresenceDirectory

logger = get_logger(__name__)


@dataclass(frozen=True)
class OpaquePayload:
    """A value the relay forwards byte-for-byte and never looks inside."""
    value: Any


@dataclass(frozen=True)
class CallSignal:
    kind: InboundEvent
    origin_id: str
    target_id: str
    payload: Optional[OpaquePayload] = None

    @property
    def route(self) -> SignalRoute:
        return SIGNAL_ROUTES[self.kind]

    def outbound_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {self.route.origin_field: self.origin_id}
        if self.route.payload_field is not None and self.payload is not None:
            data[self.route.payload_field] = self.payload.value
        return data


class CallSignalingRelay:

    def __init__(self, presence: "PresenceDirectory"):
        self.presence = presence

    @staticmethod
    def parse(kind: InboundEvent, origin_id: str, data: Dict[str, Any]) -> CallSignal:
        """Build a CallSignal from an inbound payload; raises InvalidPayload."""
        if kind not in SIGNAL_ROUTES:
            raise InvalidPayload(f"{kind.value} is not a signaling event")

        target_id = data.get("targetUserId")
        if not is_non_empty_str(target_id):
            raise InvalidPayload("targetUserId must be a non-empty string")

        route = SIGNAL_ROUTES[kind]
        payload = None
        if route.payload_field is not None:
            if route.payload_field not in data:
                raise InvalidPayload(f"Missing required field: {route.payload_field}")
            payload = OpaquePayload(data[route.payload_field])

        if kind is InboundEvent.CALL_REQUEST and payload is not None and payload.value not in CALL_MODES:
            raise InvalidPayload(f"mode must be one of {sorted(CALL_MODES)}")

        return CallSignal(kind=kind, origin_id=origin_id, target_id=target_id, payload=payload)

    async def forward(self, signal: CallSignal) -> bool:
        """
        Push the signal to its target.

        Returns:
            True if written to the target's connection, False if the target is offline or the write failed
        """
        target = self.presence.resolve(signal.target_id)
        context = {"user_id": signal.origin_id, "event": signal.kind.value}
        if target is None:
            logger.debug("Target %s offline, dropping signal", signal.target_id, extra=context)
            return False

        delivered = await target.send_event(signal.route.outbound, signal.outbound_data())
        if delivered:
            logger.debug("Forwarded as %s to %s", signal.route.outbound.value, signal.target_id, extra=context)
        return delivered
