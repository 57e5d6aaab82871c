"""Tests for the in-memory repository and the message pipeline."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from support_chat.domain.errors import (
    ConversationNotFound,
    ConversationResolved,
    InvalidTransition,
    ValidationError,
)
from support_chat.domain.models import (
    ConversationChanges,
    LeadContact,
    NewMessage,
    Sender,
    Status,
    utcnow,
)
from support_chat.domain.state_machine import AI_STATUSES, Event
from support_chat.repositories.memory import InMemoryRepository
from support_chat.services.pipeline import MessagePipeline, validate_body


@pytest.mark.parametrize(
    "body,error",
    [
        (None, "Message is required"),
        ("", "Message is required"),
        ("   \n\t ", "Message cannot be empty"),
        ("x" * 2001, "Message is too long (max 2000 characters)"),
        (42, "Message is required"),
    ],
)
def test_validate_body_rejects(body, error):
    """Test invalid message bodies are rejected."""
    with pytest.raises(ValidationError) as exc_info:
        validate_body(body)
    assert exc_info.value.message == error


def test_validate_body_trims():
    """Test message bodies are trimmed."""
    assert validate_body("  hello  ") == "hello"
    assert validate_body(" " + "x" * 2000 + " ") == "x" * 2000


@pytest.mark.asyncio
async def test_create_conversation_defaults():
    """Test creating a new conversation."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a", {"page_url": "/"})
    assert conversation.status == Status.ACTIVE
    assert conversation.assigned_to == "ai"
    assert not conversation.requires_human
    assert conversation.context == {"page_url": "/"}


@pytest.mark.asyncio
async def test_token_cannot_open_second_conversation():
    """Test a token maps to one conversation."""
    repository = InMemoryRepository()
    await repository.create_conversation("chat_a")
    with pytest.raises(ValidationError):
        await repository.create_conversation("chat_a")


@pytest.mark.asyncio
async def test_returned_conversations_are_snapshots():
    """Test returned conversations are copies."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a")
    conversation.status = Status.RESOLVED
    stored = await repository.get_conversation(conversation.id)
    assert stored.status == Status.ACTIVE


@pytest.mark.asyncio
async def test_messages_ordered_by_creation():
    """Test messages come back in creation order."""
    repository = InMemoryRepository()
    pipeline = MessagePipeline(repository)
    conversation = await repository.create_conversation("chat_a")

    await asyncio.gather(
        *[
            pipeline.submit(conversation.id, Sender.CUSTOMER, f"message {i}")
            for i in range(20)
        ]
    )
    messages = await repository.get_messages(conversation.id)

    assert len(messages) == 20
    assert len({m.id for m in messages}) == 20
    for earlier, later in zip(messages, messages[1:]):
        assert earlier.created_at < later.created_at


@pytest.mark.asyncio
async def test_pipeline_returns_canonical_message():
    """Test the pipeline returns the stored message."""
    repository = InMemoryRepository()
    pipeline = MessagePipeline(repository)
    conversation = await repository.create_conversation("chat_a")

    message = await pipeline.submit(conversation.id, Sender.CUSTOMER, "  Hi there  ", {"a": 1})
    stored = await repository.get_messages(conversation.id)

    assert message.body == "Hi there"
    assert stored == [message]


@pytest.mark.asyncio
async def test_resolved_conversation_rejects_every_write():
    """Test a resolved conversation rejects every write."""
    repository = InMemoryRepository()
    pipeline = MessagePipeline(repository)
    conversation = await repository.create_conversation("chat_a")
    await pipeline.submit(conversation.id, Sender.CUSTOMER, "hello")
    await repository.commit(conversation.id, event=Event.RESOLVE)

    for sender in Sender:
        with pytest.raises(ConversationResolved):
            await pipeline.submit(conversation.id, sender, "still there?")
    with pytest.raises(ConversationResolved):
        await repository.commit(conversation.id, changes=ConversationChanges(requires_human=True))
    with pytest.raises(ConversationResolved):
        await repository.commit(conversation.id, event=Event.HAND_BACK)

    assert await repository.count_messages(conversation.id) == 1


@pytest.mark.asyncio
async def test_rejected_event_writes_nothing():
    """Test a rejected transition writes nothing."""
    repository = InMemoryRepository()
    pipeline = MessagePipeline(repository)
    conversation = await repository.create_conversation("chat_a")
    await repository.commit(conversation.id, event=Event.TAKE_OVER)

    result = await pipeline.commit(
        conversation.id, Sender.AI, "AI reply", event=Event.AI_REPLIED
    )
    assert not result.applied
    assert result.message is None
    assert result.conversation.status == Status.HUMAN_HANDLING
    assert await repository.count_messages(conversation.id) == 0

    with pytest.raises(InvalidTransition):
        await pipeline.submit(conversation.id, Sender.AI, "AI reply", event=Event.AI_REPLIED)


@pytest.mark.asyncio
async def test_closing_message_stored_before_resolution():
    """Test a closing message is stored with the resolution."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a")

    result = await repository.commit(
        conversation.id,
        message=NewMessage(sender=Sender.HUMAN_AGENT, body="Thanks, goodbye!"),
        event=Event.RESOLVE,
    )

    assert result.status_changed
    assert result.conversation.status == Status.RESOLVED
    assert result.conversation.resolved_at is not None
    assert result.message.body == "Thanks, goodbye!"


@pytest.mark.asyncio
async def test_expire_rejected_after_recent_update():
    """Test expiry is refused for a conversation updated after the cutoff."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a")
    cutoff = utcnow()
    await repository.commit(
        conversation.id, message=NewMessage(sender=Sender.CUSTOMER, body="Still there?")
    )

    result = await repository.commit(conversation.id, event=Event.EXPIRE, updated_before=cutoff)

    assert not result.applied
    assert result.rejection == "conversation was updated"
    assert result.conversation.status == Status.ACTIVE

    later = utcnow() + timedelta(minutes=1)
    result = await repository.commit(conversation.id, event=Event.EXPIRE, updated_before=later)
    assert result.applied
    assert result.conversation.status == Status.RESOLVED


@pytest.mark.asyncio
async def test_get_messages_returns_everything_without_limit():
    """Test fetching all messages and a page of them."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a")
    for i in range(600):
        await repository.commit(
            conversation.id, message=NewMessage(sender=Sender.CUSTOMER, body=f"message {i}")
        )

    messages = await repository.get_messages(conversation.id)
    assert len(messages) == 600
    assert messages[-1].body == "message 599"

    page = await repository.get_messages(conversation.id, limit=10, offset=590)
    assert [m.body for m in page] == [f"message {i}" for i in range(590, 600)]


@pytest.mark.asyncio
async def test_unknown_conversation():
    """Test operations on an unknown conversation."""
    repository = InMemoryRepository()
    await repository.create_conversation("chat_a")
    missing = uuid4()

    with pytest.raises(ConversationNotFound):
        await repository.commit(missing, event=Event.RESOLVE)
    with pytest.raises(ConversationNotFound):
        await repository.get_messages(missing)
    assert await repository.get_conversation_by_token("chat_missing") is None


@pytest.mark.asyncio
async def test_lead_stored_in_dedicated_fields():
    """Test lead details are stored on the conversation."""
    repository = InMemoryRepository()
    conversation = await repository.create_conversation("chat_a", {"page_url": "/"})
    lead = LeadContact(name="Ada", email="ada@example.com", phone="5550100")

    result = await repository.commit(conversation.id, changes=ConversationChanges(lead=lead))

    assert result.conversation.lead == lead
    assert result.conversation.lead_captured_at is not None
    assert result.conversation.context == {"page_url": "/"}


@pytest.mark.asyncio
async def test_list_puts_needs_human_first():
    """Test conversations needing a human are listed first."""
    repository = InMemoryRepository()
    first = await repository.create_conversation("chat_first")
    flagged = await repository.create_conversation("chat_flagged")
    last = await repository.create_conversation("chat_last")
    closed = await repository.create_conversation("chat_closed")

    await repository.commit(
        flagged.id,
        changes=ConversationChanges(requires_human=True),
        event=Event.ESCALATE,
    )
    await repository.commit(
        last.id, message=NewMessage(sender=Sender.CUSTOMER, body="latest")
    )
    await repository.commit(closed.id, event=Event.RESOLVE)

    summaries = await repository.list_conversations()
    tokens = [s.conversation.session_token for s in summaries]
    assert tokens == ["chat_flagged", "chat_last", "chat_first"]
    assert summaries[1].last_message == "latest"
    assert summaries[1].last_sender == Sender.CUSTOMER
    assert summaries[1].message_count == 1

    only_flagged = await repository.list_conversations(needs_attention_only=True)
    assert [s.conversation.id for s in only_flagged] == [flagged.id]
    assert first.id not in {s.conversation.id for s in only_flagged}


@pytest.mark.asyncio
async def test_stats_and_stale_lookup():
    """Test dashboard stats and the stale lookup."""
    repository = InMemoryRepository()
    ai = await repository.create_conversation("chat_ai")
    human = await repository.create_conversation("chat_human")
    done = await repository.create_conversation("chat_done")
    await repository.commit(
        human.id, changes=ConversationChanges(assigned_to="agent"), event=Event.TAKE_OVER
    )
    await repository.commit(done.id, event=Event.RESOLVE)

    now = utcnow()
    stats = await repository.stats(now)
    assert stats.active_count == 1
    assert stats.resolved_today == 1
    assert stats.new_today == 3
    assert stats.ai_handling_count == 1
    assert stats.human_handling_count == 1

    stale = await repository.find_stale(now + timedelta(minutes=31), AI_STATUSES)
    assert [c.id for c in stale] == [ai.id]
    assert await repository.find_stale(now - timedelta(minutes=31), AI_STATUSES) == []
