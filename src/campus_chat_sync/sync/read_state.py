"""Unread aggregates for tab badges and the notification center."""

from dataclasses import dataclass
from uuid import UUID

import structlog

from ..collaborators.base import DataStore, IdentityProvider
from ..domain.results import Err
from ..store.conversation_store import ConversationStore, StoreChange

logger = structlog.get_logger()


@dataclass(frozen=True)
class Badges:
    unread_conversations: int
    unread_notifications: int


class ReadStateTracker:
    """Derives unread counts from the store and the data store.

    Counts are recomputed from scratch on every trigger. A failed
    recomputation keeps the previous value.
    """

    def __init__(self, store: ConversationStore, data_store: DataStore, identity: IdentityProvider) -> None:
        self._store = store
        self._data_store = data_store
        self._identity = identity
        self.unread_conversations = 0
        self.unread_notifications = 0
        self._unsubscribe = store.subscribe(self._on_store_change)

    def _on_store_change(self, change: StoreChange) -> None:
        user_id = self._identity.get_current_user_id()
        if user_id is None:
            self.unread_conversations = 0
            return
        self.recompute_unread_conversations(user_id)

    def recompute_unread_conversations(self, user_id: UUID) -> int:
        """Count conversations whose latest message came from someone else and is unseen."""
        try:
            count = sum(
                1 for conversation in self._store.list_conversations()
                if conversation.last_message_sender_id != user_id and conversation.is_unread
            )
        except Exception as e:
            logger.error("unread_conversations_recompute_failed", user_id=str(user_id), error=str(e))
            return self.unread_conversations

        if count != self.unread_conversations:
            logger.debug("unread_conversations_changed", previous=self.unread_conversations, current=count)
        self.unread_conversations = count
        return count

    async def recompute_unread_notifications(self, user_id: UUID) -> int:
        """Refresh the unread notification count from the data store."""
        try:
            result = await self._data_store.fetch_unread_notification_count(user_id)
        except Exception as e:
            logger.error("unread_notifications_recompute_failed", user_id=str(user_id), error=str(e))
            return self.unread_notifications

        if isinstance(result, Err):
            logger.warning(
                "unread_notifications_recompute_failed",
                user_id=str(user_id),
                error=result.reason,
                kind=result.kind.value,
            )
            return self.unread_notifications
        if not isinstance(result.value, int) or result.value < 0:
            logger.warning("unread_notifications_invalid_count", user_id=str(user_id), count=result.value)
            return self.unread_notifications

        self.unread_notifications = result.value
        return result.value

    def badges(self) -> Badges:
        return Badges(self.unread_conversations, self.unread_notifications)

    def reset(self) -> None:
        self.unread_conversations = 0
        self.unread_notifications = 0

    def close(self) -> None:
        """Stop observing the store."""
        self._unsubscribe()
