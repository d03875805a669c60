"""Domain models for the conversation sync engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    """Kind of a chat message."""

    TEXT = "text"
    IMAGE = "image"
    SYSTEM = "system"


class NotificationType(str, Enum):
    """Category of a notification record."""

    MESSAGE = "message"
    ORDER = "order"
    PRODUCT = "product"
    SYSTEM = "system"


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    sender_id: UUID
    content: str
    kind: MessageKind = MessageKind.TEXT
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    reply_to_id: Optional[UUID] = None
    media_url: Optional[str] = None

    def order_key(self):
        # id breaks timestamp ties so the order stays total
        return (self.created_at, str(self.id))


class Conversation(BaseModel):
    """A buyer/seller/product chat thread as seen by one viewer."""

    id: UUID = Field(default_factory=uuid4)
    buyer_id: UUID
    seller_id: UUID
    product_id: UUID
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_sender_id: Optional[UUID] = None
    is_archived: bool = False
    is_unread: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def activity_at(self) -> datetime:
        """Timestamp the conversation list is ordered by."""
        return self.last_message_at or self.created_at

    def has_participant(self, user_id: UUID) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    def counterpart_of(self, user_id: UUID) -> UUID:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id


class ConversationSummary(BaseModel):
    """Patch for the denormalized last-message fields of a conversation."""

    conversation_id: UUID
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_sender_id: Optional[UUID] = None
    is_unread: bool = False

    @classmethod
    def from_message(cls, message: Message, viewer_id: UUID) -> "ConversationSummary":
        """Build the summary a new message implies for ``viewer_id``."""
        return cls(
            conversation_id=message.conversation_id,
            last_message=message.content,
            last_message_at=message.created_at,
            last_message_sender_id=message.sender_id,
            is_unread=message.sender_id != viewer_id and not message.is_read,
        )

    @classmethod
    def from_conversation(cls, conversation: Conversation, viewer_id: UUID) -> "ConversationSummary":
        """Build a summary from a server-side conversation row."""
        return cls(
            conversation_id=conversation.id,
            last_message=conversation.last_message,
            last_message_at=conversation.last_message_at,
            last_message_sender_id=conversation.last_message_sender_id,
            is_unread=(
                conversation.last_message_sender_id is not None
                and conversation.last_message_sender_id != viewer_id
                and conversation.is_unread
            ),
        )


class Notification(BaseModel):
    """Notification center entry."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: str
    body: str
    type: NotificationType = NotificationType.SYSTEM
    is_read: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
