"""Realtime change events and subscription primitives."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Union
from uuid import UUID, uuid4

from .models import Conversation, Message, Notification


class ChannelStatus(str, Enum):
    """Status notifications a realtime subscription receives."""

    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


@dataclass(frozen=True)
class MessageInserted:
    message: Message


@dataclass(frozen=True)
class ConversationUpdated:
    conversation: Conversation


@dataclass(frozen=True)
class NotificationInserted:
    notification: Notification


ChangeEvent = Union[MessageInserted, ConversationUpdated, NotificationInserted]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque handle returned by a realtime channel subscription."""

    topic: str
    id: UUID = field(default_factory=uuid4)


def conversation_topic(conversation_id: UUID) -> str:
    return f"chat-{conversation_id}"


def user_conversations_topic(user_id: UUID) -> str:
    return f"user-chats-{user_id}"


def user_notifications_topic(user_id: UUID) -> str:
    return f"user-notifications-{user_id}"
