"""Collaborator interfaces the sync engine depends on."""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from ..domain.events import ChangeEvent, ChannelStatus, SubscriptionHandle
from ..domain.models import Conversation, Message, MessageKind, Notification
from ..domain.results import Result

EventCallback = Callable[[ChangeEvent], Awaitable[None]]
StatusCallback = Callable[[ChannelStatus], Awaitable[None]]
EventPredicate = Callable[[ChangeEvent], bool]


class IdentityProvider(ABC):
    """Source of the signed-in user."""

    @abstractmethod
    def get_current_user_id(self) -> Optional[UUID]:
        """Return the signed-in user's ID, if any."""
        pass

    @abstractmethod
    def is_signed_in(self) -> bool:
        """Whether a valid session exists."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session."""
        pass


class DataStore(ABC):
    """Remote request/response store.

    Implementations report failures as ``Err`` results and never raise.
    """

    @abstractmethod
    async def fetch_conversations(self, user_id: UUID) -> Result[List[Conversation]]:
        """Fetch every conversation the user takes part in."""
        pass

    @abstractmethod
    async def fetch_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        """Fetch one conversation; ``Err(kind=NOT_FOUND)`` when missing."""
        pass

    @abstractmethod
    async def fetch_messages(self, conversation_id: UUID) -> Result[List[Message]]:
        """Fetch the full message history of a conversation."""
        pass

    @abstractmethod
    async def send_message(
        self,
        conversation_id: UUID,
        sender_id: UUID,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        reply_to_id: Optional[UUID] = None,
    ) -> Result[Message]:
        """Insert a message and return the stored record."""
        pass

    @abstractmethod
    async def mark_messages_read(self, conversation_id: UUID, viewer_id: UUID) -> Result[None]:
        """Mark every message not sent by the viewer as read."""
        pass

    @abstractmethod
    async def fetch_unread_notification_count(self, user_id: UUID) -> Result[int]:
        """Count the user's unread notifications."""
        pass

    @abstractmethod
    async def get_or_create_conversation(
        self, buyer_id: UUID, seller_id: UUID, product_id: UUID
    ) -> Result[Conversation]:
        """Return the conversation for the triple, creating it if needed."""
        pass

    @abstractmethod
    async def archive_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        """Flag a conversation as archived."""
        pass

    @abstractmethod
    async def fetch_notifications(self, user_id: UUID, limit: int = 50) -> Result[List[Notification]]:
        """Fetch the user's most recent notifications, newest first."""
        pass

    @abstractmethod
    async def mark_notification_read(self, notification_id: UUID) -> Result[None]:
        """Mark a single notification as read."""
        pass

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: UUID) -> Result[None]:
        """Mark every notification of the user as read."""
        pass


class RealtimeChannel(ABC):
    """Publish/subscribe channel for remote change events.

    Delivery is at-most-once per connection with no ordering guarantee
    across reconnects.
    """

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        predicate: EventPredicate,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SubscriptionHandle:
        """Subscribe to events on ``topic`` that satisfy ``predicate``."""
        pass

    @abstractmethod
    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Cancel a subscription; no callbacks fire for it afterwards."""
        pass


class NotificationDispatcher(ABC):
    """Local notification delivery."""

    @abstractmethod
    async def show_local_notification(
        self, title: str, body: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Show a notification immediately. Fire-and-forget."""
        pass
