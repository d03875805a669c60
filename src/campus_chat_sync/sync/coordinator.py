"""
Sync Coordinator

Bridges realtime change events and app lifecycle transitions into
Conversation Store mutations. It is the only writer of the store.

Convergence rests on three rules:
- every subscription that becomes live first merges a full snapshot, and
  events received before that are buffered and applied afterwards
- every merge is an idempotent upsert keyed by record ID, so duplicate and
  out-of-order deliveries commute
- returning to the foreground re-issues the snapshot for whatever is shown,
  since realtime delivery is not guaranteed in the background

Subscriptions are torn down synchronously. Events and snapshot results that
belong to a torn down subscription are discarded by comparing subscription
identity before they are applied.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Dict, List, Optional, TypeVar
from uuid import UUID

from structlog import get_logger

from ..collaborators.base import DataStore, IdentityProvider, NotificationDispatcher, RealtimeChannel
from ..config import Settings
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
from ..domain.models import Conversation, ConversationSummary, Message, MessageKind, Notification
from ..domain.results import Err, ErrorKind, Ok, Result
from ..metrics import (
    CHANNEL_INTERRUPTIONS,
    COLLABORATOR_ERRORS,
    DISCARDED_EVENTS,
    REALTIME_EVENTS,
    SNAPSHOT_FETCHES,
)
from ..store.conversation_store import ConversationStore
from ..store.notification_store import NotificationStore
from .notices import NoticeBoard
from .read_state import ReadStateTracker

logger = get_logger()

T = TypeVar("T")

# User facing text for collaborator failures, by operation
NOTICE_TEXT = {
    "fetch_conversations": "Couldn't refresh your conversations",
    "fetch_conversation": "Couldn't load this conversation",
    "fetch_messages": "Couldn't load messages",
    "send_message": "Message could not be sent",
    "mark_messages_read": "Couldn't update read status",
    "get_or_create_conversation": "Couldn't start the conversation",
    "archive_conversation": "Couldn't archive the conversation",
    "fetch_notifications": "Couldn't refresh notifications",
    "mark_notification_read": "Couldn't update the notification",
    "mark_all_notifications_read": "Couldn't update notifications",
}


class AppState(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    LIVE = "live"


class SubscriptionRole(str, Enum):
    CONVERSATIONS = "conversations"
    CONVERSATION = "conversation"
    NOTIFICATIONS = "notifications"


@dataclass(eq=False)
class _Subscription:
    """Coordinator side record of one realtime subscription."""

    role: SubscriptionRole
    topic: str
    conversation_id: Optional[UUID] = None
    state: SubscriptionState = SubscriptionState.DISCONNECTED
    handle: Optional[SubscriptionHandle] = None
    ready: bool = False  # a snapshot has been merged since the last (re)subscribe
    pending: List[ChangeEvent] = field(default_factory=list)


@dataclass(frozen=True)
class SendOutcome:
    """Result of a send attempt; on failure carries the content to restore."""

    message: Optional[Message] = None
    error: Optional[Err] = None
    restored_content: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.message is not None


class SyncCoordinator:
    """Keeps the Conversation Store converged with the remote state."""

    def __init__(
        self,
        identity: IdentityProvider,
        data_store: DataStore,
        channel: RealtimeChannel,
        dispatcher: NotificationDispatcher,
        store: Optional[ConversationStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or Settings()
        self._identity = identity
        self._data_store = data_store
        self._channel = channel
        self._dispatcher = dispatcher
        self.store = store or ConversationStore(data_store)
        self.notifications = NotificationStore()
        self.read_state = ReadStateTracker(self.store, data_store, identity)
        self.notices = NoticeBoard(self.settings.max_notices)
        self.app_state = AppState.FOREGROUND
        self._subscriptions: Dict[str, _Subscription] = {}
        self._open_conversation_id: Optional[UUID] = None
        self._drafts: Dict[UUID, str] = {}
        self._user_id: Optional[UUID] = None

    @property
    def user_id(self) -> Optional[UUID]:
        return self._user_id

    @property
    def open_conversation_id(self) -> Optional[UUID]:
        return self._open_conversation_id

    def conversation_list_state(self) -> SubscriptionState:
        if self._user_id is None:
            return SubscriptionState.DISCONNECTED
        return self._state_of(user_conversations_topic(self._user_id))

    def conversation_state(self, conversation_id: UUID) -> SubscriptionState:
        return self._state_of(conversation_topic(conversation_id))

    def _state_of(self, topic: str) -> SubscriptionState:
        sub = self._subscriptions.get(topic)
        return sub.state if sub else SubscriptionState.DISCONNECTED

    def draft_for(self, conversation_id: UUID) -> Optional[str]:
        """Content of a failed send, kept for the composer."""
        return self._drafts.get(conversation_id)

    # Collaborator boundary

    async def _call(self, operation: str, call: Awaitable[Result[T]]) -> Result[T]:
        """Await a collaborator call, converting timeouts and exceptions into ``Err``."""
        try:
            result = await asyncio.wait_for(call, timeout=self.settings.request_timeout)
        except asyncio.TimeoutError:
            result = Err(f"{operation} timed out")
        except Exception as e:
            logger.error("collaborator_call_raised", operation=operation, error=str(e))
            result = Err(str(e))

        if isinstance(result, Err):
            COLLABORATOR_ERRORS.labels(operation=operation, kind=result.kind.value).inc()
            logger.warning(
                "collaborator_call_failed",
                operation=operation,
                kind=result.kind.value,
                error=result.reason,
            )
            if not result.not_found and self._user_id is not None:
                self.notices.post(NOTICE_TEXT.get(operation, "Something went wrong"))
        return result

    # Session lifecycle

    async def start(self) -> bool:
        """Subscribe to the signed-in user's conversations and notifications."""
        user_id = self._identity.get_current_user_id()
        if not self._identity.is_signed_in() or user_id is None:
            logger.warning("sync_start_without_session")
            return False
        if self._user_id == user_id:
            return True
        if self._user_id is not None:
            self.stop()

        self._user_id = user_id
        self.store.viewer_id = user_id
        logger.info("sync_started", user_id=str(user_id))
        await self._subscribe(_Subscription(SubscriptionRole.CONVERSATIONS, user_conversations_topic(user_id)))
        await self._subscribe(_Subscription(SubscriptionRole.NOTIFICATIONS, user_notifications_topic(user_id)))
        return True

    def stop(self) -> None:
        """Tear down every subscription; the stores keep their content."""
        for topic in list(self._subscriptions):
            self._teardown(topic)
        self._open_conversation_id = None
        if self._user_id is not None:
            logger.info("sync_stopped", user_id=str(self._user_id))
        self._user_id = None
        self.store.viewer_id = None

    async def sign_out(self) -> None:
        """Stop syncing, discard all session state and end the session."""
        self.stop()
        self.store.clear()
        self.notifications.clear()
        self.read_state.reset()
        self.notices.clear()
        self._drafts.clear()
        try:
            await self._identity.sign_out()
        except Exception as e:
            logger.error("sign_out_failed", error=str(e))

    async def set_app_state(self, state: AppState) -> None:
        """Record a foreground/background transition; reconcile on return to foreground."""
        previous, self.app_state = self.app_state, state
        if previous == state:
            return
        logger.info("app_state_changed", previous=previous.value, current=state.value)
        if previous is AppState.BACKGROUND and state is AppState.FOREGROUND:
            await self.reconcile()

    async def reconcile(self) -> None:
        """Re-issue the snapshot of everything currently displayed."""
        if self._user_id is None:
            return
        logger.info("reconcile_started", subscriptions=len(self._subscriptions))
        for sub in list(self._subscriptions.values()):
            if not self._is_current(sub):
                continue
            if sub.handle is None and sub.state is SubscriptionState.DISCONNECTED:
                # subscribing raised earlier; try once more
                await self._subscribe(sub)
            else:
                await self._snapshot(sub)

    # Subscriptions

    def _is_current(self, sub: _Subscription) -> bool:
        return self._subscriptions.get(sub.topic) is sub

    def _predicate_for(self, sub: _Subscription):
        user_id = self._user_id

        def accepts(event: ChangeEvent) -> bool:
            if sub.role is SubscriptionRole.CONVERSATION:
                return isinstance(event, MessageInserted) and event.message.conversation_id == sub.conversation_id
            if sub.role is SubscriptionRole.CONVERSATIONS:
                return isinstance(event, ConversationUpdated) and event.conversation.has_participant(user_id)
            return isinstance(event, NotificationInserted) and event.notification.user_id == user_id

        return accepts

    async def _subscribe(self, sub: _Subscription) -> None:
        self._subscriptions[sub.topic] = sub
        sub.state = SubscriptionState.SUBSCRIBING
        sub.ready = False
        try:
            handle = await self._channel.subscribe(
                sub.topic,
                self._predicate_for(sub),
                partial(self._on_event, sub),
                partial(self._on_status, sub),
            )
        except Exception as e:
            logger.error("subscribe_failed", topic=sub.topic, error=str(e))
            if self._is_current(sub):
                sub.state = SubscriptionState.DISCONNECTED
                # no live events will come; still show the snapshot
                await self._snapshot(sub)
            return

        if not self._is_current(sub):
            # torn down while subscribing
            self._channel.unsubscribe(handle)
            return
        sub.handle = handle

    def _teardown(self, topic: str) -> None:
        sub = self._subscriptions.pop(topic, None)
        if sub is None:
            return
        sub.state = SubscriptionState.DISCONNECTED
        sub.ready = False
        if sub.pending:
            DISCARDED_EVENTS.inc(len(sub.pending))
            sub.pending.clear()
        if sub.handle is not None:
            try:
                self._channel.unsubscribe(sub.handle)
            except Exception as e:
                logger.error("unsubscribe_failed", topic=topic, error=str(e))
        logger.info("subscription_torn_down", topic=topic)

    async def _on_status(self, sub: _Subscription, status: ChannelStatus) -> None:
        if not self._is_current(sub):
            return
        if status is ChannelStatus.SUBSCRIBED:
            sub.state = SubscriptionState.LIVE
            logger.info("subscription_live", topic=sub.topic)
            await self._snapshot(sub)
            return

        if sub.state is SubscriptionState.LIVE:
            CHANNEL_INTERRUPTIONS.inc()
        sub.state = SubscriptionState.DISCONNECTED
        sub.ready = False
        logger.warning("subscription_interrupted", topic=sub.topic, status=status.value)

    async def _on_event(self, sub: _Subscription, event: ChangeEvent) -> None:
        """Single entry point for realtime events."""
        REALTIME_EVENTS.labels(kind=type(event).__name__).inc()
        if not self._is_current(sub):
            DISCARDED_EVENTS.inc()
            logger.debug("stale_subscription_event_discarded", topic=sub.topic)
            return
        if not sub.ready:
            sub.pending.append(event)
            return
        await self._apply(event)

    async def _drain(self, sub: _Subscription) -> None:
        while sub.pending and self._is_current(sub):
            await self._apply(sub.pending.pop(0))
        if self._is_current(sub):
            sub.ready = True

    async def _apply(self, event: ChangeEvent) -> None:
        if isinstance(event, MessageInserted):
            await self._on_message(event.message)
        elif isinstance(event, ConversationUpdated):
            await self._on_conversation_updated(event.conversation)
        elif isinstance(event, NotificationInserted):
            await self._on_notification(event.notification)

    # Snapshots

    async def _snapshot(self, sub: _Subscription) -> bool:
        if sub.role is SubscriptionRole.CONVERSATIONS:
            merged = await self._snapshot_conversations(sub)
        elif sub.role is SubscriptionRole.CONVERSATION:
            merged = await self._snapshot_messages(sub)
        else:
            merged = await self._snapshot_notifications(sub)

        # buffered events are applied even when the snapshot failed
        if self._is_current(sub):
            await self._drain(sub)
        return merged

    def _discard_snapshot(self, sub: _Subscription) -> bool:
        if self._is_current(sub):
            return False
        DISCARDED_EVENTS.inc()
        logger.info("snapshot_discarded", topic=sub.topic)
        return True

    async def _snapshot_conversations(self, sub: _Subscription) -> bool:
        SNAPSHOT_FETCHES.labels(target="conversations").inc()
        result = await self._call("fetch_conversations", self._data_store.fetch_conversations(self._user_id))
        if self._discard_snapshot(sub) or isinstance(result, Err):
            return False
        self.store.merge_conversations(result.value)
        logger.info("conversations_snapshot_merged", count=len(result.value))
        return True

    async def _snapshot_messages(self, sub: _Subscription) -> bool:
        conversation_id = sub.conversation_id
        SNAPSHOT_FETCHES.labels(target="messages").inc()
        result = await self._call("fetch_messages", self._data_store.fetch_messages(conversation_id))
        if self._discard_snapshot(sub) or isinstance(result, Err):
            return False

        self.store.merge_messages(conversation_id, result.value)
        logger.info(
            "messages_snapshot_merged",
            conversation_id=str(conversation_id),
            count=len(result.value),
        )
        messages = self.store.list_messages(conversation_id)
        if messages:
            await self._upsert_summary(ConversationSummary.from_message(messages[-1], self._user_id))
        if self.app_state is AppState.FOREGROUND and self._has_unread(conversation_id):
            await self.mark_conversation_read(conversation_id)
        return True

    async def _snapshot_notifications(self, sub: _Subscription) -> bool:
        SNAPSHOT_FETCHES.labels(target="notifications").inc()
        result = await self._call(
            "fetch_notifications",
            self._data_store.fetch_notifications(self._user_id, self.settings.notification_limit),
        )
        if self._discard_snapshot(sub):
            return False
        if isinstance(result, Ok):
            self.notifications.replace(result.value)
        await self.read_state.recompute_unread_notifications(self._user_id)
        return isinstance(result, Ok)

    def _has_unread(self, conversation_id: UUID) -> bool:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is not None and conversation.is_unread:
            return True
        return any(
            m.sender_id != self._user_id and not m.is_read
            for m in self.store.list_messages(conversation_id)
        )

    # Incremental events

    async def _upsert_summary(self, patch: ConversationSummary) -> None:
        await self._call(
            "fetch_conversation", self.store.upsert_conversation_summary(patch)
        )

    async def _on_message(self, message: Message) -> None:
        """Message events only arrive on the open conversation's subscription."""
        viewer_id = self._user_id
        conversation_id = message.conversation_id
        appended = self.store.append_message(message)
        await self._upsert_summary(ConversationSummary.from_message(message, viewer_id))
        if not appended or message.sender_id == viewer_id:
            return

        await self._notify_local(message)
        if self.app_state is AppState.FOREGROUND and self._open_conversation_id == conversation_id:
            await self.mark_conversation_read(conversation_id)

    async def _on_conversation_updated(self, conversation: Conversation) -> None:
        held = self.store.get_conversation(conversation.id)
        if held is None:
            self.store.insert_conversation(conversation)
            return
        await self._upsert_summary(ConversationSummary.from_conversation(conversation, self._user_id))
        if conversation.is_archived != held.is_archived:
            current = self.store.get_conversation(conversation.id) or held
            self.store.replace_conversation(current.model_copy(update={"is_archived": conversation.is_archived}))

    async def _on_notification(self, notification: Notification) -> None:
        if self.notifications.add(notification):
            logger.info("notification_received", notification_id=str(notification.id))
            await self.read_state.recompute_unread_notifications(self._user_id)

    async def _notify_local(self, message: Message) -> None:
        if not self.settings.local_notifications:
            return
        payload: Dict[str, Any] = {
            "type": "message",
            "chat_id": str(message.conversation_id),
            "message_id": str(message.id),
        }
        try:
            await self._dispatcher.show_local_notification("New message", message.content, payload)
        except Exception as e:
            logger.warning("local_notification_failed", error=str(e))

    # User intents

    def _session_ended(self, user_id: UUID, operation: str) -> bool:
        """True when the session that issued ``operation`` is gone; its result is dropped."""
        if self._user_id == user_id:
            return False
        logger.info("intent_result_discarded", operation=operation)
        return True

    async def open_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        """Show a conversation: subscribe, fetch its history and mark it read."""
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        if self._open_conversation_id == conversation_id and conversation_topic(conversation_id) in self._subscriptions:
            conversation = self.store.get_conversation(conversation_id)
            if conversation is not None:
                return Ok(conversation)
        if self._open_conversation_id is not None:
            self.close_conversation(self._open_conversation_id)

        self._open_conversation_id = conversation_id
        if self.store.get_conversation(conversation_id) is None:
            result = await self._call("fetch_conversation", self._data_store.fetch_conversation(conversation_id))
            if self._open_conversation_id != conversation_id:
                return Err("Conversation was closed while loading", ErrorKind.REJECTED)
            if isinstance(result, Err):
                self._open_conversation_id = None
                return result
            self.store.insert_conversation(result.value)

        logger.info("conversation_opened", conversation_id=str(conversation_id))
        await self._subscribe(_Subscription(
            SubscriptionRole.CONVERSATION,
            conversation_topic(conversation_id),
            conversation_id=conversation_id,
        ))
        return Ok(self.store.get_conversation(conversation_id))

    def close_conversation(self, conversation_id: UUID) -> None:
        """Stop following a conversation; pending results for it are dropped."""
        if self._open_conversation_id == conversation_id:
            self._open_conversation_id = None
        self._teardown(conversation_topic(conversation_id))
        logger.info("conversation_closed", conversation_id=str(conversation_id))

    async def send_message(
        self,
        conversation_id: UUID,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        reply_to_id: Optional[UUID] = None,
    ) -> SendOutcome:
        """Send a message. The store changes only once the server confirms it."""
        if self._user_id is None:
            return SendOutcome(error=Err("Not signed in", ErrorKind.REJECTED), restored_content=content)
        if not content.strip():
            return SendOutcome(error=Err("Message content is empty", ErrorKind.REJECTED), restored_content=content)

        user_id = self._user_id
        self._drafts.pop(conversation_id, None)
        result = await self._call(
            "send_message",
            self._data_store.send_message(conversation_id, user_id, content.strip(), kind, reply_to_id),
        )
        if self._session_ended(user_id, "send_message"):
            if isinstance(result, Err):
                return SendOutcome(error=result, restored_content=content)
            return SendOutcome(message=result.value)
        if isinstance(result, Err):
            self._drafts[conversation_id] = content
            return SendOutcome(error=result, restored_content=content)

        message = result.value
        self.store.append_message(message)
        await self._upsert_summary(ConversationSummary.from_message(message, user_id))
        logger.info(
            "message_sent",
            conversation_id=str(conversation_id),
            message_id=str(message.id),
            content_length=len(message.content),
        )
        return SendOutcome(message=message)

    async def mark_conversation_read(self, conversation_id: UUID) -> Result[None]:
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        user_id = self._user_id
        result = await self._call(
            "mark_messages_read", self._data_store.mark_messages_read(conversation_id, user_id)
        )
        if isinstance(result, Ok) and not self._session_ended(user_id, "mark_messages_read"):
            self.store.mark_conversation_read(conversation_id, user_id)
        return result

    async def refresh_conversations(self) -> bool:
        if self._user_id is None:
            return False
        sub = self._subscriptions.get(user_conversations_topic(self._user_id))
        return await self._snapshot(sub) if sub else False

    async def refresh_open_conversation(self) -> bool:
        if self._open_conversation_id is None:
            return False
        sub = self._subscriptions.get(conversation_topic(self._open_conversation_id))
        return await self._snapshot(sub) if sub else False

    async def refresh_notifications(self) -> bool:
        if self._user_id is None:
            return False
        sub = self._subscriptions.get(user_notifications_topic(self._user_id))
        return await self._snapshot(sub) if sub else False

    async def start_conversation(self, seller_id: UUID, product_id: UUID) -> Result[Conversation]:
        """Get or create the conversation with a seller about a product."""
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        user_id = self._user_id
        result = await self._call(
            "get_or_create_conversation",
            self._data_store.get_or_create_conversation(user_id, seller_id, product_id),
        )
        if isinstance(result, Err) or self._session_ended(user_id, "get_or_create_conversation"):
            return result
        return Ok(self.store.insert_conversation(result.value))

    async def archive_conversation(self, conversation_id: UUID) -> Result[Conversation]:
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        user_id = self._user_id
        result = await self._call("archive_conversation", self._data_store.archive_conversation(conversation_id))
        if isinstance(result, Err) or self._session_ended(user_id, "archive_conversation"):
            return result
        held = self.store.get_conversation(conversation_id)
        if held is None:
            self.store.insert_conversation(result.value)
        else:
            self.store.replace_conversation(held.model_copy(update={"is_archived": True}))
        logger.info("conversation_archived", conversation_id=str(conversation_id))
        return Ok(self.store.get_conversation(conversation_id))

    async def mark_notification_read(self, notification_id: UUID) -> Result[None]:
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        user_id = self._user_id
        result = await self._call("mark_notification_read", self._data_store.mark_notification_read(notification_id))
        if isinstance(result, Ok) and not self._session_ended(user_id, "mark_notification_read"):
            self.notifications.mark_read(notification_id)
            await self.read_state.recompute_unread_notifications(user_id)
        return result

    async def mark_all_notifications_read(self) -> Result[None]:
        if self._user_id is None:
            return Err("Not signed in", ErrorKind.REJECTED)
        user_id = self._user_id
        result = await self._call(
            "mark_all_notifications_read", self._data_store.mark_all_notifications_read(user_id)
        )
        if isinstance(result, Ok) and not self._session_ended(user_id, "mark_all_notifications_read"):
            self.notifications.mark_all_read()
            await self.read_state.recompute_unread_notifications(user_id)
        return result

    def dismiss_notice(self, notice_id: UUID) -> bool:
        return self.notices.dismiss(notice_id)
