from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from server.core.EventTypes import OutboundEvent
from server.core.MessageRecord import Message, MessageStatus
from server.core.errors import EmptyContent, NotFound, PersistenceError
from shared.log import get_logger
from shared.utils import is_non_empty_str

if TYPE_CHECKING:
    from server.core.ConnectionLink import ConnectionLink
    from server.core.PresenceDirectory import PresenceDirectory
    from server.storage import MessageLedger

logger = get_logger(__name__)


class MessagingRelay:
    """
    Persists chat messages and pushes them to whoever is online.

    Send flow: validate -> append (status "sent") -> resolve recipient ->
    push "new_message" -> record "delivered" -> confirm to the sender.
    The recipient is resolved after the append completes, so a disconnect
    during persistence just means the push is skipped.
    """

    def __init__(self, presence: "PresenceDirectory", ledger: "MessageLedger"):
        self.presence = presence
        self.ledger = ledger

    async def send(self, sender_id: str, receiver_id: str, content: str, reply_to: "ConnectionLink") -> Message:
        """
        Store and route one message, confirming on ``reply_to`` (the sender's own connection).

        Raises:
            EmptyContent: content is blank after trimming; nothing is stored
            PersistenceError: the ledger rejected the append; nothing is pushed
        """
        if not is_non_empty_str(content):
            raise EmptyContent("Message content is empty")

        message = await self.ledger.append(sender_id, receiver_id, content)
        context = {"user_id": sender_id, "message_id": message.id}

        recipient = self.presence.resolve(receiver_id)
        if recipient is None:
            logger.info("Recipient %s offline, message stays sent", receiver_id, extra=context)
        elif await recipient.send_event(OutboundEvent.NEW_MESSAGE, self.incoming_view(message)):
            message = await self._mark_delivered(message)
        else:
            logger.info("Push to %s failed, message stays sent", receiver_id, extra=context)

        await reply_to.send_event(OutboundEvent.MESSAGE_SENT, message.to_dict())
        logger.info("Message to %s confirmed as %s", receiver_id, message.status.value, extra=context)
        return message

    async def acknowledge_read(self, message_id: str, reader_id: Optional[str] = None) -> Message:
        """
        Record that the receiver has read ``message_id`` and tell the sender if online.

        Args:
            reader_id: When given, must be the message's receiver

        Raises:
            NotFound: unknown message, or ``reader_id`` is not its receiver
        """
        if reader_id is not None:
            current = await self.ledger.get(message_id)
            if current.receiver != reader_id:
                raise NotFound(message_id)

        message = await self.ledger.update_status(message_id, MessageStatus.READ)

        sender_link = self.presence.resolve(message.sender)
        if sender_link is not None:
            await sender_link.send_event(
                OutboundEvent.MESSAGE_STATUS,
                {"messageId": message.id, "status": MessageStatus.READ.value},
            )
        logger.info("Message marked read", extra={"user_id": reader_id, "message_id": message.id})
        return message

    async def _mark_delivered(self, message: Message) -> Message:
        try:
            return await self.ledger.update_status(message.id, MessageStatus.DELIVERED)
        except PersistenceError as e:
            # The push already happened; the stored status lags behind until the next update
            logger.error("Could not record delivery: %s", e, extra={"message_id": message.id})
            return message

    @staticmethod
    def incoming_view(message: Message) -> Dict[str, Any]:
        """Record as pushed to the recipient: sender collapsed to ``{"_id": ...}``."""
        view = message.to_dict()
        view["sender"] = {"_id": message.sender}
        return view
