"""Client-side snapshot of conversations and messages for the signed-in user."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional
from uuid import UUID

import structlog

from ..collaborators.base import DataStore
from ..domain.models import Conversation, ConversationSummary, Message
from ..domain.results import Err, ErrorKind, Ok, Result

logger = structlog.get_logger()


class StoreChangeKind(str, Enum):
    CONVERSATIONS = "conversations"
    MESSAGES = "messages"
    READ_STATE = "read_state"
    CLEARED = "cleared"


@dataclass(frozen=True)
class StoreChange:
    """Published to store listeners after every mutation."""

    kind: StoreChangeKind
    conversation_id: Optional[UUID] = None


Listener = Callable[[StoreChange], None]


class ConversationStore:
    """In-memory conversation store.

    Readers receive the held pydantic records; mutations replace records
    instead of editing them in place. All
    mutations are keyed by stable identifiers, so applying the same set of
    changes in any order yields the same content.

    Conversation rows are held with the unread flag as seen by
    ``viewer_id``: a row is unread only while its latest message came from
    someone else.
    """

    def __init__(self, data_store: DataStore, viewer_id: Optional[UUID] = None) -> None:
        self._data_store = data_store
        self.viewer_id = viewer_id
        self._generation = 0
        self._conversations: Dict[UUID, Conversation] = {}
        self._order: List[UUID] = []
        self._messages: Dict[UUID, Dict[UUID, Message]] = {}
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, kind: StoreChangeKind, conversation_id: Optional[UUID] = None) -> None:
        change = StoreChange(kind, conversation_id)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(
                    "store_listener_failed",
                    change=kind.value,
                    conversation_id=str(conversation_id) if conversation_id else None,
                    error=str(e),
                )

    def _resort(self) -> None:
        ordered = sorted(
            self._conversations.values(),
            key=lambda c: (c.activity_at, str(c.id)),
            reverse=True,
        )
        self._order = [c.id for c in ordered]

    def _for_viewer(self, conversation: Conversation) -> Conversation:
        is_unread = ConversationSummary.from_conversation(conversation, self.viewer_id).is_unread
        if is_unread == conversation.is_unread:
            return conversation
        return conversation.model_copy(update={"is_unread": is_unread})

    # Reads

    def list_conversations(self, include_archived: bool = True) -> List[Conversation]:
        """Conversations, most recent activity first."""
        conversations = [self._conversations[cid] for cid in self._order]
        if include_archived:
            return conversations
        return [c for c in conversations if not c.is_archived]

    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def list_messages(self, conversation_id: UUID) -> List[Message]:
        """Messages of a conversation, oldest first."""
        bucket = self._messages.get(conversation_id, {})
        return sorted(bucket.values(), key=lambda m: m.order_key())

    def has_message(self, conversation_id: UUID, message_id: UUID) -> bool:
        return message_id in self._messages.get(conversation_id, {})

    # Mutations

    @staticmethod
    def _apply_summary(conversation: Conversation, patch: ConversationSummary) -> Conversation:
        # never regress: older or equal summaries leave the record untouched
        if patch.last_message_at is None:
            return conversation
        if conversation.last_message_at is not None and patch.last_message_at <= conversation.last_message_at:
            return conversation
        return conversation.model_copy(update={
            "last_message": patch.last_message,
            "last_message_at": patch.last_message_at,
            "last_message_sender_id": patch.last_message_sender_id,
            "is_unread": patch.is_unread,
            "updated_at": max(conversation.updated_at, patch.last_message_at),
        })

    def insert_conversation(self, conversation: Conversation) -> Conversation:
        """Insert a conversation the store does not hold yet; held records win."""
        held = self._conversations.get(conversation.id)
        if held is not None:
            return held
        conversation = self._for_viewer(conversation)
        self._conversations[conversation.id] = conversation
        self._resort()
        self._publish(StoreChangeKind.CONVERSATIONS, conversation.id)
        return conversation

    def replace_conversation(self, conversation: Conversation) -> None:
        """Replace the non-summary fields of a conversation (e.g. archival)."""
        conversation = self._for_viewer(conversation)
        held = self._conversations.get(conversation.id)
        if held is not None and held.last_message_at is not None and (
            conversation.last_message_at is None or held.last_message_at > conversation.last_message_at
        ):
            conversation = conversation.model_copy(update={
                "last_message": held.last_message,
                "last_message_at": held.last_message_at,
                "last_message_sender_id": held.last_message_sender_id,
                "is_unread": held.is_unread,
            })
        self._conversations[conversation.id] = conversation
        self._resort()
        self._publish(StoreChangeKind.CONVERSATIONS, conversation.id)

    async def upsert_conversation_summary(self, patch: ConversationSummary) -> Result[Conversation]:
        """Apply last-message fields, fetching the conversation if it is unknown."""
        conversation = self._conversations.get(patch.conversation_id)
        if conversation is None:
            generation = self._generation
            result = await self._data_store.fetch_conversation(patch.conversation_id)
            if isinstance(result, Err):
                logger.warning(
                    "summary_conversation_fetch_failed",
                    conversation_id=str(patch.conversation_id),
                    error=result.reason,
                    kind=result.kind.value,
                )
                return result
            if generation != self._generation:
                logger.info("summary_discarded_after_clear", conversation_id=str(patch.conversation_id))
                return Err("Store was cleared while loading", ErrorKind.REJECTED)
            # another mutation may have inserted it while the fetch was in flight
            conversation = self._conversations.get(patch.conversation_id) or self._for_viewer(result.value)
            logger.info("conversation_inserted", conversation_id=str(conversation.id))

        updated = self._apply_summary(conversation, patch)
        self._conversations[updated.id] = updated
        self._resort()
        self._publish(StoreChangeKind.CONVERSATIONS, updated.id)
        return Ok(updated)

    def append_message(self, message: Message) -> bool:
        """Insert ``message`` unless its ID is already held; returns whether it was new."""
        bucket = self._messages.setdefault(message.conversation_id, {})
        if message.id in bucket:
            logger.debug(
                "duplicate_message_discarded",
                conversation_id=str(message.conversation_id),
                message_id=str(message.id),
            )
            return False
        bucket[message.id] = message
        logger.debug(
            "message_appended",
            conversation_id=str(message.conversation_id),
            message_id=str(message.id),
        )
        self._publish(StoreChangeKind.MESSAGES, message.conversation_id)
        return True

    def mark_conversation_read(self, conversation_id: UUID, viewer_id: UUID) -> None:
        """Clear the unread flag of the conversation and of messages others sent."""
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and conversation.is_unread:
            self._conversations[conversation_id] = conversation.model_copy(update={"is_unread": False})

        bucket = self._messages.get(conversation_id, {})
        for message_id, message in list(bucket.items()):
            if message.sender_id != viewer_id and not message.is_read:
                bucket[message_id] = message.model_copy(update={"is_read": True})

        self._publish(StoreChangeKind.READ_STATE, conversation_id)

    def merge_conversations(self, snapshot: Iterable[Conversation]) -> None:
        """Reconcile against a full conversation snapshot.

        The snapshot decides which conversations exist. A held summary that
        is strictly newer than the snapshot's keeps its last-message fields.
        """
        merged: Dict[UUID, Conversation] = {}
        for incoming in snapshot:
            incoming = self._for_viewer(incoming)
            held = self._conversations.get(incoming.id)
            if held is not None and held.last_message_at is not None and (
                incoming.last_message_at is None or held.last_message_at > incoming.last_message_at
            ):
                incoming = incoming.model_copy(update={
                    "last_message": held.last_message,
                    "last_message_at": held.last_message_at,
                    "last_message_sender_id": held.last_message_sender_id,
                    "is_unread": held.is_unread,
                })
            merged[incoming.id] = incoming

        dropped = set(self._conversations) - set(merged)
        if dropped:
            logger.info("conversations_dropped_by_snapshot", count=len(dropped))
        self._conversations = merged
        self._resort()
        self._publish(StoreChangeKind.CONVERSATIONS)

    def merge_messages(self, conversation_id: UUID, snapshot: Iterable[Message]) -> None:
        """Reconcile a conversation's messages against a full history snapshot."""
        bucket = self._messages.setdefault(conversation_id, {})
        for message in snapshot:
            bucket[message.id] = message
        self._publish(StoreChangeKind.MESSAGES, conversation_id)

    def clear(self) -> None:
        """Discard everything held for the session."""
        self._generation += 1
        self._conversations.clear()
        self._order.clear()
        self._messages.clear()
        logger.info("conversation_store_cleared")
        self._publish(StoreChangeKind.CLEARED)
