"""Transient user-facing notifications (toasts)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

logger = logging.getLogger(__name__)

NotificationLevel = Literal["info", "success", "error"]


@dataclass(slots=True)
class Notification:
    id: str
    message: str
    level: NotificationLevel
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "message": self.message,
            "type": self.level,
            "createdAt": self.created_at,
        }


class Notifier:
    """Collect notifications until the user dismisses them."""

    def __init__(self, *, max_items: int = 50) -> None:
        self._items: list[Notification] = []
        self._max_items = max_items

    def notify(self, message: str, level: NotificationLevel = "info") -> Notification:
        notification = Notification(id=uuid.uuid4().hex, message=message, level=level)
        self._items.append(notification)
        if len(self._items) > self._max_items:
            del self._items[: len(self._items) - self._max_items]
        log = logger.warning if level == "error" else logger.info
        log("notification.%s message=%s", level, message)
        return notification

    def info(self, message: str) -> Notification:
        return self.notify(message, "info")

    def success(self, message: str) -> Notification:
        return self.notify(message, "success")

    def error(self, message: str) -> Notification:
        return self.notify(message, "error")

    def active(self) -> list[Notification]:
        return list(self._items)

    def latest(self) -> Notification | None:
        return self._items[-1] if self._items else None

    def dismiss(self, notification_id: str) -> bool:
        for index, item in enumerate(self._items):
            if item.id == notification_id:
                del self._items[index]
                return True
        return False

    def clear(self) -> None:
        self._items.clear()


__all__ = ["Notification", "NotificationLevel", "Notifier"]
