from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Dict, Optional

from shared.log import get_logger

if TYPE_CHECKING:
    from server.core.ConnectionLink import ConnectionLink

logger = get_logger(__name__)


class PresenceDirectory:
    """
    user_id -> live ConnectionLink, at most one entry per user.

    The only shared mutable state in the relay. Every read and write goes
    through one lock so ``unregister`` can compare-and-remove atomically
    with respect to a concurrent ``register`` for the same user.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, "ConnectionLink"] = {}
        self._lock = threading.Lock()

    def register(self, user_id: str, link: "ConnectionLink") -> Optional["ConnectionLink"]:
        """
        Upsert the entry for ``user_id``; last registration wins.

        Returns:
            The link that was displaced, or None if the user had no other live entry
        """
        with self._lock:
            previous = self._entries.get(user_id)
            self._entries[user_id] = link
        if previous is not None and previous is not link:
            logger.info("Displaced connection %s", previous.connection_id[:8],
                        extra={"user_id": user_id, "connection_id": link.connection_id})
            return previous
        return None

    def resolve(self, user_id: str) -> Optional["ConnectionLink"]:
        with self._lock:
            return self._entries.get(user_id)

    def unregister(self, user_id: str, link: "ConnectionLink") -> bool:
        """
        Remove the entry only while it still points at ``link``.

        Returns:
            True if removed, False when a newer connection owns the entry (stale disconnect)
        """
        with self._lock:
            if self._entries.get(user_id) is not link:
                stale = True
            else:
                del self._entries[user_id]
                stale = False
        if stale:
            logger.debug("Ignored stale unregister", extra={"user_id": user_id, "connection_id": link.connection_id})
            return False
        return True

    def is_online(self, user_id: str) -> bool:
        return self.resolve(user_id) is not None

    def online_users(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
