"""Notification center cache."""

from typing import Dict, Iterable, List
from uuid import UUID

from ..domain.models import Notification


class NotificationStore:
    """Notifications for the signed-in user, newest first."""

    def __init__(self) -> None:
        self._notifications: Dict[UUID, Notification] = {}

    def list(self) -> List[Notification]:
        return sorted(
            self._notifications.values(),
            key=lambda n: (n.created_at, str(n.id)),
            reverse=True,
        )

    def add(self, notification: Notification) -> bool:
        if notification.id in self._notifications:
            return False
        self._notifications[notification.id] = notification
        return True

    def replace(self, notifications: Iterable[Notification]) -> None:
        self._notifications = {n.id: n for n in notifications}

    def mark_read(self, notification_id: UUID) -> None:
        notification = self._notifications.get(notification_id)
        if notification is not None and not notification.is_read:
            self._notifications[notification_id] = notification.model_copy(update={"is_read": True})

    def mark_all_read(self) -> None:
        self._notifications = {
            nid: n if n.is_read else n.model_copy(update={"is_read": True})
            for nid, n in self._notifications.items()
        }

    def unread_count(self) -> int:
        return sum(1 for n in self._notifications.values() if not n.is_read)

    def clear(self) -> None:
        self._notifications.clear()
