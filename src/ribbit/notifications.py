"""Notification primitives for Ribbit Reserve.

Notifications are a side channel: nothing in the task or ledger workflow
depends on them being delivered.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Protocol, Sequence
from uuid import uuid4

from .exceptions import NotFoundError
from .ops import StructuredLogger


class NotificationType(str, Enum):
    TASK_COMPLETED = "task_completed"
    TASK_APPROVED = "task_approved"
    MONEY_DISPENSED = "money_dispensed"
    POINTS_DISPENSED = "points_dispensed"
    SPECIAL_DISPENSED = "special_dispensed"
    SPECIAL_GRANTED = "special_granted"
    SPECIAL_REDEMPTION = "special_redemption"
    SPECIAL_REDEMPTION_APPROVED = "special_redemption_approved"
    INTEREST_RATE_UPDATED = "interest_rate_updated"
    INTEREST_APPLIED = "interest_applied"
    OTHER = "other"


@dataclass(slots=True)
class Notification:
    """A message waiting in a parent's or child's inbox."""

    id: str
    user_id: str
    type: NotificationType
    message: str
    related_id: str = ""
    title: str = ""
    read: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "related_id": self.related_id,
            "read": self.read,
            "created_at": self.created_at.isoformat(),
        }


class NotificationDispatcher(Protocol):
    def notify(
        self,
        user_id: str,
        type: NotificationType,
        message: str,
        related_id: str = "",
        *,
        title: str = "",
    ) -> object: ...


class NotificationCenter:
    """In-memory notification inbox used for tests and integrations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._inbox: List[Notification] = []

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        message: str,
        related_id: str = "",
        *,
        title: str = "",
    ) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            type=NotificationType(type),
            message=message,
            related_id=related_id,
            title=title,
        )
        with self._lock:
            self._inbox.append(notification)
        return notification

    def for_user(self, user_id: str, *, limit: int = 20) -> Sequence[Notification]:
        """Return the newest ``limit`` notifications for ``user_id``."""

        with self._lock:
            matches = [item for item in self._inbox if item.user_id == user_id]
        matches.reverse()
        return tuple(matches[:limit])

    def unread(self, user_id: str, *, notification_type: NotificationType | None = None) -> Sequence[Notification]:
        with self._lock:
            matches = [
                item
                for item in self._inbox
                if item.user_id == user_id
                and not item.read
                and (notification_type is None or item.type is notification_type)
            ]
        matches.reverse()
        return tuple(matches)

    def unread_count(self, user_id: str) -> int:
        return len(self.unread(user_id))

    def mark_read(self, notification_id: str) -> Notification:
        with self._lock:
            for item in self._inbox:
                if item.id == notification_id:
                    item.read = True
                    return item
        raise NotFoundError(f"Notification '{notification_id}' does not exist.")

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        with self._lock:
            for item in self._inbox:
                if item.user_id == user_id and not item.read:
                    item.read = True
                    count += 1
        return count

    def delete(self, notification_id: str) -> None:
        with self._lock:
            before = len(self._inbox)
            self._inbox = [item for item in self._inbox if item.id != notification_id]
            if len(self._inbox) == before:
                raise NotFoundError(f"Notification '{notification_id}' does not exist.")

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._inbox = [item for item in self._inbox if item.user_id != user_id]

    def history(self) -> Sequence[Notification]:
        with self._lock:
            return tuple(self._inbox)


def notify_safely(
    dispatcher: NotificationDispatcher | None,
    logger: StructuredLogger,
    user_id: str,
    type: NotificationType,
    message: str,
    related_id: str = "",
    *,
    title: str = "",
) -> bool:
    """Deliver a notification, logging instead of raising when delivery fails."""

    if dispatcher is None:
        return False
    try:
        dispatcher.notify(user_id, type, message, related_id, title=title)
    except Exception as exc:
        logger.log(
            "notification_failed",
            user=user_id,
            type=type.value,
            related_id=related_id,
            error=repr(exc),
        )
        return False
    return True


__all__ = [
    "Notification",
    "NotificationCenter",
    "NotificationDispatcher",
    "NotificationType",
    "notify_safely",
]
