"""Test suite for the sync coordinator."""

from uuid import uuid4

import pytest

from campus_chat_sync.collaborators.memory import InMemoryBackend, InMemoryIdentityProvider
from campus_chat_sync.config import Settings
from campus_chat_sync.domain.events import (
    ConversationUpdated,
    MessageInserted,
    conversation_topic,
    user_conversations_topic,
)
from campus_chat_sync.domain.results import Err, ErrorKind, Ok
from campus_chat_sync.sync.coordinator import AppState, SubscriptionState, SyncCoordinator

from factories import BUYER, OTHER_SELLER, SELLER, at, build_coordinator, make_conversation, make_message


async def seed_conversation(backend, created=0):
    """A conversation holding two read messages at t=1 and t=2."""
    conversation = backend.add_conversation(make_conversation(created=created))
    first = await backend.insert_message(make_message(conversation, SELLER, 1, is_read=True), publish=False)
    second = await backend.insert_message(make_message(conversation, BUYER, 2, is_read=True), publish=False)
    return conversation, first, second


@pytest.mark.asyncio
async def test_start_requires_session():
    backend = InMemoryBackend()
    coordinator = SyncCoordinator(
        InMemoryIdentityProvider(None), backend, backend.channel, None, settings=Settings()
    )
    assert await coordinator.start() is False
    assert coordinator.conversation_list_state() is SubscriptionState.DISCONNECTED
    assert backend.channel.subscriber_count() == 0


@pytest.mark.asyncio
async def test_start_fetches_snapshot_and_goes_live():
    """Test that the conversation list is loaded when its subscription becomes live."""
    backend = InMemoryBackend()
    conversation, _, second = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)

    assert await coordinator.start()

    assert coordinator.conversation_list_state() is SubscriptionState.LIVE
    assert backend.channel.subscriber_count(user_conversations_topic(BUYER)) == 1
    listed = coordinator.store.list_conversations()
    assert [c.id for c in listed] == [conversation.id]
    assert listed[0].last_message == second.content
    assert coordinator.read_state.unread_conversations == 0


@pytest.mark.asyncio
async def test_message_for_closed_conversation_then_open():
    """Test the unread-then-open flow for a conversation that is not displayed."""
    backend = InMemoryBackend()
    conversation, first, second = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    await coordinator.start()

    third = await backend.insert_message(make_message(conversation, SELLER, 3, content="Still available?"))

    listed = coordinator.store.list_conversations()
    assert listed[0].id == conversation.id
    assert listed[0].last_message == "Still available?"
    assert coordinator.read_state.recompute_unread_conversations(BUYER) == 1
    assert coordinator.store.list_messages(conversation.id) == []
    assert dispatcher.shown == []

    result = await coordinator.open_conversation(conversation.id)

    assert isinstance(result, Ok)
    assert "mark_messages_read" in backend.calls
    assert coordinator.read_state.recompute_unread_conversations(BUYER) == 0
    assert [m.id for m in coordinator.store.list_messages(conversation.id)] == [first.id, second.id, third.id]


@pytest.mark.asyncio
async def test_incoming_message_in_open_conversation():
    """Test append, local notification and mark-read for the open conversation."""
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)
    assert coordinator.conversation_state(conversation.id) is SubscriptionState.LIVE
    reads_before = backend.calls.count("mark_messages_read")

    incoming = await backend.insert_message(make_message(conversation, SELLER, 3, content="Deal"))

    messages = coordinator.store.list_messages(conversation.id)
    assert messages[-1].id == incoming.id
    assert messages[-1].is_read
    assert backend.calls.count("mark_messages_read") == reads_before + 1
    assert len(dispatcher.shown) == 1
    assert dispatcher.shown[0]["body"] == "Deal"
    assert dispatcher.shown[0]["payload"]["chat_id"] == str(conversation.id)
    assert coordinator.read_state.unread_conversations == 0


@pytest.mark.asyncio
async def test_background_messages_stay_unread_until_foreground():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)
    await coordinator.set_app_state(AppState.BACKGROUND)

    await backend.insert_message(make_message(conversation, SELLER, 3))

    assert len(dispatcher.shown) == 1
    assert coordinator.read_state.unread_conversations == 1
    assert not coordinator.store.list_messages(conversation.id)[-1].is_read

    await coordinator.set_app_state(AppState.FOREGROUND)

    assert coordinator.read_state.unread_conversations == 0
    assert coordinator.store.list_messages(conversation.id)[-1].is_read


@pytest.mark.asyncio
async def test_out_of_order_events_display_by_timestamp():
    """Test that arrival order never decides message position."""
    backend = InMemoryBackend()
    conversation, first, second = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)

    late = await backend.insert_message(make_message(conversation, SELLER, 5, content="mX"))
    early = await backend.insert_message(make_message(conversation, SELLER, 4, content="mY"))

    ids = [m.id for m in coordinator.store.list_messages(conversation.id)]
    assert ids == [first.id, second.id, early.id, late.id]
    assert coordinator.store.get_conversation(conversation.id).last_message == "mX"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_absorbed():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)

    incoming = await backend.insert_message(make_message(conversation, SELLER, 3))
    await backend.channel.publish(conversation_topic(conversation.id), MessageInserted(incoming))
    await backend.channel.publish(conversation_topic(conversation.id), MessageInserted(incoming))

    ids = [m.id for m in coordinator.store.list_messages(conversation.id)]
    assert ids.count(incoming.id) == 1
    assert len(dispatcher.shown) == 1


@pytest.mark.asyncio
async def test_send_appends_confirmed_message_once():
    """Test that the direct response and the realtime echo yield one entry."""
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)

    outcome = await coordinator.send_message(conversation.id, "  Can we meet at the library?  ")

    assert outcome.ok
    assert outcome.message.content == "Can we meet at the library?"
    ids = [m.id for m in coordinator.store.list_messages(conversation.id)]
    assert ids.count(outcome.message.id) == 1
    assert ids[-1] == outcome.message.id
    held = coordinator.store.get_conversation(conversation.id)
    assert held.last_message == "Can we meet at the library?"
    assert held.last_message_sender_id == BUYER
    assert dispatcher.shown == []


@pytest.mark.asyncio
async def test_failed_send_leaves_store_unchanged_and_restores_draft():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)
    before = coordinator.store.list_messages(conversation.id)
    summary_before = coordinator.store.get_conversation(conversation.id)

    backend.fail_next("send_message", "network down")
    outcome = await coordinator.send_message(conversation.id, "Is it still available?")

    assert not outcome.ok
    assert outcome.error.kind is ErrorKind.UNAVAILABLE
    assert outcome.restored_content == "Is it still available?"
    assert coordinator.draft_for(conversation.id) == "Is it still available?"
    assert coordinator.store.list_messages(conversation.id) == before
    assert coordinator.store.get_conversation(conversation.id) == summary_before
    assert [n.text for n in coordinator.notices.list()] == ["Message could not be sent"]

    retry = await coordinator.send_message(conversation.id, "Is it still available?")
    assert retry.ok
    assert coordinator.draft_for(conversation.id) is None


@pytest.mark.asyncio
async def test_blank_message_is_not_sent():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()

    outcome = await coordinator.send_message(conversation.id, "   ")

    assert not outcome.ok
    assert outcome.error.kind is ErrorKind.REJECTED
    assert "send_message" not in backend.calls


@pytest.mark.asyncio
async def test_open_missing_conversation_is_not_found():
    """Test that a conversation removed server-side yields an empty view, not a notice."""
    backend = InMemoryBackend()
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    missing = uuid4()

    result = await coordinator.open_conversation(missing)

    assert isinstance(result, Err)
    assert result.not_found
    assert coordinator.open_conversation_id is None
    assert backend.channel.subscriber_count(conversation_topic(missing)) == 0
    assert coordinator.notices.list() == []


@pytest.mark.asyncio
async def test_opening_another_conversation_closes_the_first():
    backend = InMemoryBackend()
    first, _, _ = await seed_conversation(backend, created=0)
    second, _, _ = await seed_conversation(backend, created=1)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()

    await coordinator.open_conversation(first.id)
    await coordinator.open_conversation(second.id)

    assert coordinator.open_conversation_id == second.id
    assert coordinator.conversation_state(first.id) is SubscriptionState.DISCONNECTED
    assert backend.channel.subscriber_count(conversation_topic(first.id)) == 0
    assert backend.channel.subscriber_count(conversation_topic(second.id)) == 1


@pytest.mark.asyncio
async def test_foreground_reconciliation_converges_with_fresh_snapshot():
    """Test that missed and out-of-order events are repaired on return to foreground."""
    backend = InMemoryBackend()
    first, _, _ = await seed_conversation(backend, created=0)
    second, _, _ = await seed_conversation(backend, created=1)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()

    await backend.insert_message(make_message(first, SELLER, 5))
    await coordinator.set_app_state(AppState.BACKGROUND)
    await backend.channel.disconnect()
    await backend.insert_message(make_message(second, SELLER, 20, content="missed"))
    await backend.insert_message(make_message(first, SELLER, 15))
    await backend.insert_message(make_message(first, SELLER, 12))

    stale = coordinator.store.get_conversation(second.id)
    assert stale.last_message_at == at(2)

    await coordinator.set_app_state(AppState.FOREGROUND)
    reconciled = coordinator.store.list_conversations()
    reconciled_unread = coordinator.read_state.unread_conversations

    await backend.channel.reconnect()
    fresh, _ = build_coordinator(backend)
    await fresh.start()

    assert reconciled == fresh.store.list_conversations()
    assert reconciled[0].last_message == "missed"
    assert reconciled_unread == fresh.read_state.unread_conversations == 2


@pytest.mark.asyncio
async def test_sign_out_discards_session_state():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)
    await backend.insert_message(make_message(conversation, SELLER, 3))

    await coordinator.sign_out()

    assert coordinator.user_id is None
    assert coordinator.store.list_conversations() == []
    assert coordinator.store.list_messages(conversation.id) == []
    assert coordinator.read_state.badges().unread_conversations == 0
    assert backend.channel.subscriber_count() == 0
    assert not coordinator._identity.is_signed_in()

    await backend.insert_message(make_message(conversation, SELLER, 4))
    assert coordinator.store.list_conversations() == []


@pytest.mark.asyncio
async def test_start_conversation_is_get_or_create():
    backend = InMemoryBackend()
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    product_id = uuid4()

    created = await coordinator.start_conversation(SELLER, product_id)
    again = await coordinator.start_conversation(SELLER, product_id)

    assert isinstance(created, Ok) and isinstance(again, Ok)
    assert created.value.id == again.value.id
    assert created.value.buyer_id == BUYER
    assert [c.id for c in coordinator.store.list_conversations()] == [created.value.id]

    own = await coordinator.start_conversation(BUYER, product_id)
    assert isinstance(own, Err)
    assert own.kind is ErrorKind.REJECTED


@pytest.mark.asyncio
async def test_archive_keeps_conversation_but_hides_it():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()

    result = await coordinator.archive_conversation(conversation.id)

    assert isinstance(result, Ok)
    assert result.value.is_archived
    assert coordinator.store.get_conversation(conversation.id).is_archived
    assert coordinator.store.list_conversations(include_archived=False) == []


@pytest.mark.asyncio
async def test_local_notifications_can_be_disabled():
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, dispatcher = build_coordinator(backend)
    coordinator.settings = Settings(local_notifications=False)
    await coordinator.start()
    await coordinator.open_conversation(conversation.id)

    await backend.insert_message(make_message(conversation, SELLER, 3))

    assert dispatcher.shown == []
    assert len(coordinator.store.list_messages(conversation.id)) == 3


@pytest.mark.asyncio
async def test_manual_refresh_picks_up_missed_changes():
    """Test that pull-to-refresh merges rows the channel never delivered."""
    backend = InMemoryBackend()
    conversation, _, _ = await seed_conversation(backend)
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    assert not await coordinator.refresh_open_conversation()

    await coordinator.open_conversation(conversation.id)
    missed = await backend.insert_message(
        make_message(conversation, SELLER, 3, content="Sold already, sorry"), publish=False
    )
    newcomer = backend.add_conversation(make_conversation(created=4, seller_id=uuid4()))

    assert await coordinator.refresh_conversations()
    assert {c.id for c in coordinator.store.list_conversations()} == {conversation.id, newcomer.id}
    assert coordinator.store.get_conversation(conversation.id).last_message == "Sold already, sorry"

    assert await coordinator.refresh_open_conversation()
    assert coordinator.store.has_message(conversation.id, missed.id)
    assert coordinator.read_state.unread_conversations == 0


@pytest.mark.asyncio
async def test_list_subscription_ignores_other_users_conversations():
    """Test that activity in a conversation the user is not part of never reaches the list."""
    backend = InMemoryBackend()
    coordinator, _ = build_coordinator(backend)
    await coordinator.start()
    foreign = backend.add_conversation(make_conversation(buyer_id=OTHER_SELLER, seller_id=SELLER))
    message = await backend.insert_message(make_message(foreign, SELLER, 1))
    row = (await backend.fetch_conversation(foreign.id)).value

    calls_before = len(backend.calls)
    topic = user_conversations_topic(BUYER)
    await backend.channel.publish(topic, MessageInserted(message))
    await backend.channel.publish(topic, ConversationUpdated(row))

    assert coordinator.store.list_conversations() == []
    assert coordinator.read_state.unread_conversations == 0
    assert backend.calls[calls_before:] == []


@pytest.mark.asyncio
async def test_own_last_message_does_not_trigger_mark_read():
    """Test that a conversation the viewer wrote last is held as read."""
    backend = InMemoryBackend()
    conversation = backend.add_conversation(make_conversation())
    await backend.insert_message(make_message(conversation, SELLER, 1, is_read=True), publish=False)
    await backend.insert_message(make_message(conversation, BUYER, 2), publish=False)
    # the row is unread on the server until the seller opens it
    assert (await backend.fetch_conversation(conversation.id)).value.is_unread

    buyer, _ = build_coordinator(backend)
    await buyer.start()
    assert not buyer.store.get_conversation(conversation.id).is_unread
    await buyer.open_conversation(conversation.id)
    assert "mark_messages_read" not in backend.calls

    seller, _ = build_coordinator(backend, user_id=SELLER)
    await seller.start()
    assert seller.store.get_conversation(conversation.id).is_unread
    assert seller.read_state.unread_conversations == 1
