"""
store.py — Per-responder in-app notification inbox.

Pure data component: no business logic, no delivery. One instance is
built at startup and handed to everything that reads or writes inboxes.

    responder_id ──► [newest, ..., oldest]   (at most ``limit`` entries)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from backend.app.core.errors import NotFoundError
from backend.app.notifications.models import Notification, generate_notification_id
from backend.app.sos.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_INBOX_LIMIT = 50


class NotificationStore:
    """Thread-safe inbox map with a bounded, most-recent-first list per responder."""

    def __init__(
        self,
        *,
        limit: int = DEFAULT_INBOX_LIMIT,
        clock: Callable[[], datetime] = utcnow,
    ):
        if limit <= 0:
            raise ValueError(f"Inbox limit must be positive, got {limit}")
        self._limit = limit
        self._clock = clock
        self._lock = threading.Lock()
        self._inboxes: Dict[str, List[Notification]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def store(self, responder_id: str, notification: Notification) -> str:
        """
        Add a notification to a responder's inbox and return its id.

        The stored entry gets a fresh id, ``read=False`` and
        ``created_at=now``; the caller's object is not modified.
        """
        entry = replace(
            notification,
            id=generate_notification_id(),
            read=False,
            created_at=self._clock(),
            payload=dict(notification.payload),
        )
        with self._lock:
            inbox = self._inboxes.setdefault(responder_id, [])
            inbox.insert(0, entry)
            dropped = len(inbox) - self._limit
            if dropped > 0:
                del inbox[self._limit:]

        logger.info(
            "[IN-APP] %s stored for %s: %s",
            entry.type.value, responder_id, entry.title,
            extra={
                "responder_id": responder_id,
                "notification_id": entry.id,
                "sos_id": entry.sos_id,
            },
        )
        if dropped > 0:
            logger.debug("Inbox for %s trimmed by %d", responder_id, dropped)
        return entry.id

    def list(self, responder_id: str) -> Tuple[List[Notification], int]:
        """Snapshot of the inbox (newest first) and its unread count."""
        with self._lock:
            entries = [replace(n) for n in self._inboxes.get(responder_id, [])]
        unread = sum(1 for n in entries if not n.read)
        return entries, unread

    def get(self, responder_id: str, notification_id: str) -> Notification:
        with self._lock:
            found = self._find(responder_id, notification_id)
            return replace(found)

    def mark_read(self, responder_id: str, notification_id: str) -> Notification:
        """Mark one notification read. Marking an already-read entry is a no-op."""
        with self._lock:
            found = self._find(responder_id, notification_id)
            found.read = True
            return replace(found)

    def mark_all_read(self, responder_id: str) -> int:
        """Mark every entry read; returns how many were unread."""
        with self._lock:
            changed = 0
            for n in self._inboxes.get(responder_id, []):
                if not n.read:
                    n.read = True
                    changed += 1
        return changed

    def delete(self, responder_id: str, notification_id: str) -> Notification:
        with self._lock:
            found = self._find(responder_id, notification_id)
            self._inboxes[responder_id].remove(found)
        logger.debug(
            "Deleted notification %s for %s", notification_id, responder_id,
            extra={"responder_id": responder_id, "notification_id": notification_id},
        )
        return found

    def unread_count(self, responder_id: str) -> int:
        with self._lock:
            return sum(1 for n in self._inboxes.get(responder_id, []) if not n.read)

    def total(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._inboxes.values())

    def _find(self, responder_id: str, notification_id: str) -> Notification:
        # caller holds the lock
        found: Optional[Notification] = next(
            (n for n in self._inboxes.get(responder_id, []) if n.id == notification_id),
            None,
        )
        if found is None:
            raise NotFoundError(
                "Notification",
                responder_id=responder_id,
                notification_id=notification_id,
            )
        return found
