from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

from server.core.CallSignaling import CallSignalingRelay
from server.core.EventTypes import SIGNAL_ROUTES, InboundEvent, OutboundEvent
from server.core.errors import EmptyContent, InvalidPayload, NotFound, PersistenceError
from shared.frame import Frame, UnknownEventError
from shared.log import get_logger

if TYPE_CHECKING:
    from server.server import RelayServer
    from server.core.ConnectionLink import ConnectionLink

logger = get_logger(__name__)

# Type alias for handler functions
MessageHandler = Callable[["RelayServer", "ConnectionLink", Frame], Awaitable[None]]


class GenericValidators:
    """
    Reusable payload checks shared by the event handlers.
    Each raises InvalidPayload; the handler decides what the client sees.
    """

    @staticmethod
    def require_str_fields(data: Dict[str, Any], *field_names: str) -> None:
        missing = [name for name in field_names if name not in data]
        if missing:
            raise InvalidPayload(f"Missing required fields: {sorted(missing)}")
        for name in field_names:
            if not isinstance(data[name], str):
                raise InvalidPayload(f"{name} must be a string")

    @staticmethod
    def require_registered(connection: "ConnectionLink") -> str:
        if not connection.is_registered or connection.user_id is None:
            raise InvalidPayload("Connection is not registered")
        return connection.user_id


class MessagingHandlers:
    """
    Handlers for chat events.

    Failures are reported to the originating connection as
    ``message_error``; read acknowledgements for unknown messages are
    only logged.
    """

    @staticmethod
    async def handle_private_message(server: "RelayServer", connection: "ConnectionLink", frame: Frame) -> None:
        """Handle private_message - persist, push to the receiver, confirm to the sender."""
        try:
            sender_id = GenericValidators.require_registered(connection)
            GenericValidators.require_str_fields(frame.data, "receiverId", "content")
            await server.messaging.send(sender_id, frame.data["receiverId"], frame.data["content"], connection)
        except EmptyContent as e:
            await connection.send_error("Message content cannot be empty", str(e), event=OutboundEvent.MESSAGE_ERROR)
        except InvalidPayload as e:
            logger.warning("Rejected private_message: %s", e, extra=connection.log_context)
            await connection.send_error("Invalid message payload", str(e), event=OutboundEvent.MESSAGE_ERROR)
        except PersistenceError as e:
            logger.error("Failed to store message: %s", e, extra=connection.log_context)
            await connection.send_error("Failed to send message", str(e), event=OutboundEvent.MESSAGE_ERROR)

    @staticmethod
    async def handle_mark_read(server: "RelayServer", connection: "ConnectionLink", frame: Frame) -> None:
        """Handle mark_read - only the receiver may acknowledge a message."""
        try:
            reader_id = GenericValidators.require_registered(connection)
            GenericValidators.require_str_fields(frame.data, "messageId")
            await server.messaging.acknowledge_read(frame.data["messageId"], reader_id)
        except NotFound as e:
            logger.warning("mark_read ignored: %s", e, extra={**connection.log_context, "message_id": e.message_id})
        except InvalidPayload as e:
            logger.warning("Rejected mark_read: %s", e, extra=connection.log_context)
            await connection.send_error("Invalid message payload", str(e), event=OutboundEvent.MESSAGE_ERROR)
        except PersistenceError as e:
            logger.error("Failed to update message status: %s", e, extra=connection.log_context)
            await connection.send_error(
                "Failed to update message status", str(e), event=OutboundEvent.MESSAGE_ERROR
            )


class SignalingHandlers:
    """Handlers for call and media-negotiation events. Every failure is a silent drop."""

    @staticmethod
    async def handle_call_signal(server: "RelayServer", connection: "ConnectionLink", frame: Frame) -> None:
        kind = InboundEvent(frame.event)
        try:
            origin_id = GenericValidators.require_registered(connection)
            signal = CallSignalingRelay.parse(kind, origin_id, frame.data)
        except InvalidPayload as e:
            logger.warning("Dropping %s: %s", kind.value, e, extra=connection.log_context)
            return
        await server.signaling.forward(signal)


# Handler registry mapping inbound events to their handlers
INBOUND_HANDLER_REGISTRY: Dict[InboundEvent, MessageHandler] = {
    InboundEvent.PRIVATE_MESSAGE: MessagingHandlers.handle_private_message,
    InboundEvent.MARK_READ: MessagingHandlers.handle_mark_read,
    **{kind: SignalingHandlers.handle_call_signal for kind in SIGNAL_ROUTES},
}


def handler_for(event: str) -> MessageHandler:
    """Look up the handler for an inbound event name; raises UnknownEventError."""
    if not InboundEvent.is_valid(event):
        raise UnknownEventError(event)
    return INBOUND_HANDLER_REGISTRY[InboundEvent(event)]
