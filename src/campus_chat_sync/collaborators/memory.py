"""In-memory collaborator implementations.

Used by the test-suite and the local development server. The backend keeps
server-side rows and publishes change events on an in-memory realtime
channel the way a hosted database would through its replication feed.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.events import (
    ChangeEvent,
    ChannelStatus,
    ConversationUpdated,
    MessageInserted,
    NotificationInserted,
    SubscriptionHandle,
    conversation_topic,
    user_conversations_topic,
    user_notifications_topic,
)
from ..domain.models import Conversation, Message, MessageKind, Notification, utcnow
from ..domain.results import Err, ErrorKind, Ok, Result
from .base import (
    DataStore,
    EventCallback,
    EventPredicate,
    IdentityProvider,
    NotificationDispatcher,
    RealtimeChannel,
    StatusCallback,
)

logger = structlog.get_logger()


@dataclass
class _Registration:
    handle: SubscriptionHandle
    predicate: EventPredicate
    on_event: EventCallback
    on_status: StatusCallback


class InMemoryRealtimeChannel(RealtimeChannel):
    """Topic based pub/sub with a simulated connection."""

    def __init__(self) -> None:
        self._registrations: Dict[UUID, _Registration] = {}
        self.connected = True

    async def subscribe(
        self,
        topic: str,
        predicate: EventPredicate,
        on_event: EventCallback,
        on_status: StatusCallback,
    ) -> SubscriptionHandle:
        handle = SubscriptionHandle(topic=topic)
        self._registrations[handle.id] = _Registration(handle, predicate, on_event, on_status)
        logger.debug("channel_subscribed", topic=topic, subscription_id=str(handle.id))
        if self.connected:
            await on_status(ChannelStatus.SUBSCRIBED)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if self._registrations.pop(handle.id, None) is not None:
            logger.debug("channel_unsubscribed", topic=handle.topic, subscription_id=str(handle.id))

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        return sum(
            1 for reg in self._registrations.values()
            if topic is None or reg.handle.topic == topic
        )

    async def publish(self, topic: str, event: ChangeEvent) -> int:
        """Deliver ``event`` to the topic's subscribers; returns the delivery count."""
        if not self.connected:
            logger.info("channel_event_dropped", topic=topic)
            return 0

        delivered = 0
        for reg in list(self._registrations.values()):
            if reg.handle.topic != topic or reg.handle.id not in self._registrations:
                continue
            if not reg.predicate(event):
                continue
            await reg.on_event(event)
            delivered += 1
        return delivered

    async def disconnect(self, status: Optional[ChannelStatus] = None) -> None:
        """Drop the connection; events published until ``reconnect`` are lost.

        When ``status`` is given every subscriber is told about the failure,
        otherwise the drop is silent (as when the OS suspends a background app).
        """
        self.connected = False
        logger.info("channel_disconnected", status=status.value if status else None)
        if status is not None:
            for reg in list(self._registrations.values()):
                await reg.on_status(status)

    async def reconnect(self) -> None:
        """Restore the connection and re-acknowledge every subscription."""
        self.connected = True
        logger.info("channel_reconnected", subscriptions=len(self._registrations))
        for reg in list(self._registrations.values()):
            if reg.handle.id in self._registrations:
                await reg.on_status(ChannelStatus.SUBSCRIBED)


class InMemoryBackend(DataStore):
    """Data store keeping rows in dictionaries.

    Supports fault injection: ``available`` toggles the whole backend,
    ``fail_next`` fails one call of a named operation and ``gate`` holds
    every response until the event is set.
    """

    def __init__(self, channel: Optional[InMemoryRealtimeChannel] = None) -> None:
        self.channel = channel or InMemoryRealtimeChannel()
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._notifications: Dict[UUID, Notification] = {}
        self._async_lock = asyncio.Lock()
        self._failures: Dict[str, Err] = {}
        self.available = True
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []
        logger.info("backend_initialized")

    def fail_next(self, operation: str, reason: str = "injected failure",
                  kind: ErrorKind = ErrorKind.UNAVAILABLE) -> None:
        self._failures[operation] = Err(reason, kind)

    async def _enter(self, operation: str) -> Optional[Err]:
        self.calls.append(operation)
        if self.gate is not None:
            await self.gate.wait()
        if not self.available:
            return Err(f"{operation}: backend unavailable")
        return self._failures.pop(operation, None)

    def _row_view(self, conversation: Conversation) -> Conversation:
        # the row is unread while the last sender has unread messages in it
        sender = conversation.last_message_sender_id
        unread = sender is not None and any(
            m.sender_id == sender and not m.is_read
            for m in self._messages.get(conversation.id, [])
        )
        return conversation.model_copy(update={"is_unread": unread}, deep=True)

    # Server-side helpers used to seed data and simulate the other party.

    def add_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation.model_copy(deep=True)
        self._messages.setdefault(conversation.id, [])
        return self._row_view(self._conversations[conversation.id])

    async def insert_message(self, message: Message, publish: bool = True) -> Message:
        """Store a message as the server would and fan it out."""
        async with self._async_lock:
            conversation = self._conversations[message.conversation_id]
            stored = message.model_copy(deep=True)
            self._messages[conversation.id].append(stored)
            if conversation.last_message_at is None or stored.created_at >= conversation.last_message_at:
                conversation.last_message = stored.content
                conversation.last_message_at = stored.created_at
                conversation.last_message_sender_id = stored.sender_id
            conversation.updated_at = utcnow()
            row = self._row_view(conversation)

        logger.info(
            "backend_message_inserted",
            conversation_id=str(stored.conversation_id),
            message_id=str(stored.id),
        )
        if publish:
            await self.channel.publish(
                conversation_topic(row.id), MessageInserted(stored.model_copy(deep=True))
            )
            for participant in (row.buyer_id, row.seller_id):
                await self.channel.publish(
                    user_conversations_topic(participant), ConversationUpdated(row)
                )
        return stored.model_copy(deep=True)

    async def add_notification(self, notification: Notification, publish: bool = True) -> Notification:
        self._notifications[notification.id] = notification.model_copy(deep=True)
        if publish:
            await self.channel.publish(
                user_notifications_topic(notification.user_id),
                NotificationInserted(notification.model_copy(deep=True)),
            )
        return notification

    # DataStore interface

    async def fetch_conversations(self, user_id: UUID) -> Result[List[Conversation]]:
        failure = await self._enter("fetch_conversations")
        if failure:
            return failure
        async with self._async_lock:
            rows = [
                self._row_view(c) for c in self._conversations.values()
                if c.has_participant(user_id)
            ]
        rows.sort(key=lambda c: c.activity_at, reverse=True)
        return Ok(rows)

    async def fetch_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        failure = await self._enter("fetch_conversation")
        if failure:
            return failure
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("backend_conversation_not_found", conversation_id=str(conversation_id))
                return Err(f"Conversation {conversation_id} not found", ErrorKind.NOT_FOUND)
            return Ok(self._row_view(conversation))

    async def fetch_messages(self, conversation_id: UUID) -> Result[List[Message]]:
        failure = await self._enter("fetch_messages")
        if failure:
            return failure
        async with self._async_lock:
            if conversation_id not in self._conversations:
                return Err(f"Conversation {conversation_id} not found", ErrorKind.NOT_FOUND)
            messages = sorted(self._messages[conversation_id], key=lambda m: m.order_key())
            return Ok([m.model_copy(deep=True) for m in messages])

    async def send_message(
        self,
        conversation_id: UUID,
        sender_id: UUID,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        reply_to_id: Optional[UUID] = None,
    ) -> Result[Message]:
        failure = await self._enter("send_message")
        if failure:
            return failure
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return Err(f"Conversation {conversation_id} not found", ErrorKind.NOT_FOUND)
        if not conversation.has_participant(sender_id):
            return Err("Sender is not part of this conversation", ErrorKind.REJECTED)
        if not content.strip():
            return Err("Message content is empty", ErrorKind.REJECTED)

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content.strip(),
            kind=kind,
            reply_to_id=reply_to_id,
        )
        return Ok(await self.insert_message(message))

    async def mark_messages_read(self, conversation_id: UUID, viewer_id: UUID) -> Result[None]:
        failure = await self._enter("mark_messages_read")
        if failure:
            return failure
        async with self._async_lock:
            if conversation_id not in self._conversations:
                return Err(f"Conversation {conversation_id} not found", ErrorKind.NOT_FOUND)
            for message in self._messages[conversation_id]:
                if message.sender_id != viewer_id:
                    message.is_read = True
        return Ok(None)

    async def fetch_unread_notification_count(self, user_id: UUID) -> Result[int]:
        failure = await self._enter("fetch_unread_notification_count")
        if failure:
            return failure
        return Ok(sum(
            1 for n in self._notifications.values()
            if n.user_id == user_id and not n.is_read
        ))

    async def get_or_create_conversation(
        self, buyer_id: UUID, seller_id: UUID, product_id: UUID
    ) -> Result[Conversation]:
        failure = await self._enter("get_or_create_conversation")
        if failure:
            return failure
        if buyer_id == seller_id:
            return Err("Cannot start a conversation with yourself", ErrorKind.REJECTED)
        async with self._async_lock:
            for conversation in self._conversations.values():
                if (conversation.buyer_id, conversation.seller_id, conversation.product_id) == (
                    buyer_id, seller_id, product_id
                ):
                    return Ok(self._row_view(conversation))
            conversation = Conversation(buyer_id=buyer_id, seller_id=seller_id, product_id=product_id)
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("backend_conversation_created", conversation_id=str(conversation.id))
            return Ok(self._row_view(conversation))

    async def archive_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        failure = await self._enter("archive_conversation")
        if failure:
            return failure
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return Err(f"Conversation {conversation_id} not found", ErrorKind.NOT_FOUND)
            conversation.is_archived = True
            conversation.updated_at = utcnow()
            return Ok(self._row_view(conversation))

    async def fetch_notifications(self, user_id: UUID, limit: int = 50) -> Result[List[Notification]]:
        failure = await self._enter("fetch_notifications")
        if failure:
            return failure
        notifications = sorted(
            (n for n in self._notifications.values() if n.user_id == user_id),
            key=lambda n: n.created_at,
            reverse=True,
        )
        return Ok([n.model_copy(deep=True) for n in notifications[:limit]])

    async def mark_notification_read(self, notification_id: UUID) -> Result[None]:
        failure = await self._enter("mark_notification_read")
        if failure:
            return failure
        notification = self._notifications.get(notification_id)
        if notification is None:
            return Err(f"Notification {notification_id} not found", ErrorKind.NOT_FOUND)
        notification.is_read = True
        return Ok(None)

    async def mark_all_notifications_read(self, user_id: UUID) -> Result[None]:
        failure = await self._enter("mark_all_notifications_read")
        if failure:
            return failure
        for notification in self._notifications.values():
            if notification.user_id == user_id:
                notification.is_read = True
        return Ok(None)


class InMemoryIdentityProvider(IdentityProvider):
    """Identity provider with a fixed signed-in user."""

    def __init__(self, user_id: Optional[UUID] = None) -> None:
        self._user_id = user_id

    def get_current_user_id(self) -> Optional[UUID]:
        return self._user_id

    def is_signed_in(self) -> bool:
        return self._user_id is not None

    def sign_in(self, user_id: UUID) -> None:
        self._user_id = user_id

    async def sign_out(self) -> None:
        logger.info("identity_signed_out", user_id=str(self._user_id))
        self._user_id = None


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps every local notification instead of displaying it."""

    def __init__(self) -> None:
        self.shown: List[Dict[str, Any]] = []

    async def show_local_notification(
        self, title: str, body: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        self.shown.append({"title": title, "body": body, "payload": payload or {}})
