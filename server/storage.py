"""
Message ledger: the durable store behind the relay.

``MessageLedger`` is the contract the relay codes against:
- append(sender, receiver, content)   -> Message with status "sent"
- update_status(message_id, status)   -> updated Message (forward-only)
- get(message_id)                     -> Message
- find_conversation(user_a, user_b)   -> Messages, oldest first

Two implementations ship with the relay:
- InMemoryMessageLedger: process-local, used by tests and throwaway runs
- JsonMessageLedger: one JSON file, every write atomic (temp file + rename)

A message is either fully stored with its identifier or the call raises
PersistenceError and nothing is stored.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from server.core.MessageRecord import Message, MessageStatus, utcnow
from server.core.errors import NotFound, PersistenceError
from server.identity.ids import generate_message_id
from shared.log import get_logger

if TYPE_CHECKING:
    from server.config import RelayConfig

logger = get_logger(__name__)


class MessageLedger(ABC):
    """Gateway to the persistent message store."""

    @abstractmethod
    async def append(self, sender_id: str, receiver_id: str, content: str) -> Message:
        ...

    @abstractmethod
    async def update_status(self, message_id: str, status: MessageStatus) -> Message:
        """Apply ``status`` unless it would move the message backwards; raises NotFound."""
        ...

    @abstractmethod
    async def get(self, message_id: str) -> Message:
        ...

    @abstractmethod
    async def find_conversation(self, user_a: str, user_b: str) -> List[Message]:
        ...

    async def close(self) -> None:
        pass

    def get_storage_stats(self) -> Dict[str, Any]:
        return {}

    @staticmethod
    def _new_message(sender_id: str, receiver_id: str, content: str) -> Message:
        now = utcnow()
        return Message(
            id=generate_message_id(),
            sender=sender_id,
            receiver=receiver_id,
            content=content,
            status=MessageStatus.SENT,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _conversation(messages: List[Message], user_a: str, user_b: str) -> List[Message]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted((m for m in messages if m.involves(user_a, user_b)), key=lambda m: m.created_at)


class InMemoryMessageLedger(MessageLedger):

    def __init__(self) -> None:
        self._messages: Dict[str, Message] = {}
        self._lock = asyncio.Lock()

    async def append(self, sender_id: str, receiver_id: str, content: str) -> Message:
        message = self._new_message(sender_id, receiver_id, content)
        async with self._lock:
            self._messages[message.id] = message
        return message

    async def update_status(self, message_id: str, status: MessageStatus) -> Message:
        async with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise NotFound(message_id)
            updated = current.with_status(status)
            self._messages[message_id] = updated
        return updated

    async def get(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFound(message_id)
        return message

    async def find_conversation(self, user_a: str, user_b: str) -> List[Message]:
        return self._conversation(list(self._messages.values()), user_a, user_b)

    def get_storage_stats(self) -> Dict[str, Any]:
        return {"messages": len(self._messages)}

    def __len__(self) -> int:
        return len(self._messages)


class JsonMessageLedger(MessageLedger):
    """
    JSON-file ledger.

    Storage structure:
    <storage_path>/
        messages.json   - {"messages": [<message record>, ...]}

    Memory is the read path and every mutation rewrites the file before it
    becomes visible in memory. Other processes (relay-admin) may replace the
    file, so each operation first reloads it when its inode, mtime or size
    changed since this instance last read or wrote it.
    """

    FILE_NAME = "messages.json"

    def __init__(self, storage_path: Path):
        """
        Args:
            storage_path: Base directory for the ledger file
        """
        self.storage_path = Path(storage_path).expanduser()
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.messages_file = self.storage_path / self.FILE_NAME
        self._stamp = self._file_stamp()
        self._messages: Dict[str, Message] = self._load()
        self._lock = asyncio.Lock()
        logger.info(f"Initialized message ledger at {self.messages_file} ({len(self._messages)} messages)")

    def _file_stamp(self) -> Optional[Tuple[int, int, int]]:
        try:
            st = self.messages_file.stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    async def _refresh(self) -> None:
        stamp = self._file_stamp()
        if stamp == self._stamp:
            return
        logger.info(f"{self.messages_file.name} changed on disk; reloading")
        self._messages = await asyncio.to_thread(self._load)
        self._stamp = stamp

    def _load(self) -> Dict[str, Message]:
        data = self._atomic_read(self.messages_file)
        if not data:
            return {}
        messages: Dict[str, Message] = {}
        for record in data.get("messages", []):
            try:
                message = Message.from_dict(record)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable message record: {e}")
                continue
            messages[message.id] = message
        return messages

    def _atomic_write(self, file_path: Path, data: Dict[str, Any]) -> None:
        """
        Atomically write JSON data to file.

        Uses temp file + rename for atomicity to prevent corruption.
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f"{file_path.stem}_",
            suffix=".json.tmp",
            dir=file_path.parent
        )

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                json.dump(data, tmp, indent=2, sort_keys=True)
                tmp.flush()
                os.fsync(tmp.fileno())

            os.replace(tmp_path, file_path)
            logger.debug(f"Saved {file_path.name}")

        finally:
            # Clean up temp file if the rename did not happen
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def _atomic_read(self, file_path: Path) -> Optional[Dict[str, Any]]:
        if not file_path.exists():
            return None
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Cannot read {file_path}: {e}") from e
        logger.debug(f"Loaded {file_path.name}")
        return data

    async def _commit(self, staged: Dict[str, Message]) -> None:
        payload = {"messages": [m.to_dict() for m in staged.values()]}
        try:
            await asyncio.to_thread(self._atomic_write, self.messages_file, payload)
        except OSError as e:
            logger.error(f"Failed to write {self.messages_file}: {e}")
            raise PersistenceError(f"Message store unavailable: {e}") from e
        self._messages = staged
        self._stamp = self._file_stamp()

    async def append(self, sender_id: str, receiver_id: str, content: str) -> Message:
        message = self._new_message(sender_id, receiver_id, content)
        async with self._lock:
            await self._refresh()
            staged = dict(self._messages)
            staged[message.id] = message
            await self._commit(staged)
        return message

    async def update_status(self, message_id: str, status: MessageStatus) -> Message:
        async with self._lock:
            await self._refresh()
            current = self._messages.get(message_id)
            if current is None:
                raise NotFound(message_id)
            updated = current.with_status(status)
            if updated is current:
                return current
            staged = dict(self._messages)
            staged[message_id] = updated
            await self._commit(staged)
        return updated

    async def get(self, message_id: str) -> Message:
        async with self._lock:
            await self._refresh()
            message = self._messages.get(message_id)
        if message is None:
            raise NotFound(message_id)
        return message

    async def find_conversation(self, user_a: str, user_b: str) -> List[Message]:
        async with self._lock:
            await self._refresh()
            messages = list(self._messages.values())
        return self._conversation(messages, user_a, user_b)

    def get_storage_stats(self) -> Dict[str, Any]:
        exists = self.messages_file.exists()
        return {
            "storage_path": str(self.storage_path),
            "messages": len(self._messages),
            "size_bytes": self.messages_file.stat().st_size if exists else 0,
        }


def build_ledger(config: "RelayConfig") -> MessageLedger:
    """Instantiate the ledger backend named by ``config.ledger_backend``."""
    if config.ledger_backend == "memory":
        logger.warning("Using in-memory message ledger; messages are lost on restart")
        return InMemoryMessageLedger()
    return JsonMessageLedger(config.storage_path)
