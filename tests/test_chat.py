"""Tests for the customer message flow and degraded mode."""

import asyncio

import pytest

from conftest import FakeEngine, RecordingNotifier, UnavailableRepository
from support_chat.container import build_services
from support_chat.domain.errors import (
    CompletionEngineFailure,
    ConversationNotFound,
    ConversationResolved,
    RateLimitExceeded,
    StoreUnavailable,
    ValidationError,
)
from support_chat.domain.models import EscalationReason, NewMessage, Sender, Status
from support_chat.observability import CUSTOM_REGISTRY
from support_chat.realtime.broker import InMemoryBroker
from support_chat.realtime.fanout import ADMIN_CHANNEL, chat_channel
from support_chat.repositories.memory import InMemoryRepository
from support_chat.services.chat import HANDOFF_NOTICE, WELCOME_MESSAGE
from support_chat.services.llm import FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_new_session_issues_token_and_welcome(services, broker, notifier):
    """Test starting a new session with a welcome message."""
    start = await services.chat.start_session(context={"page_url": "/tile"}, user_agent="pytest")
    await services.notifications.drain()

    assert start.session_token.startswith("chat_")
    assert not start.is_existing
    assert start.welcome_message == WELCOME_MESSAGE
    assert start.suggested_questions
    assert broker.events(ADMIN_CHANNEL, "new-conversation")
    assert notifier.kinds() == ["new_conversation"]

    conversation = await services.repository.get_conversation_by_token(start.session_token)
    assert conversation.context["page_url"] == "/tile"
    assert conversation.context["user_agent"] == "pytest"


@pytest.mark.asyncio
async def test_open_session_is_resumed(services):
    """Test resuming an open session by its token."""
    start = await services.chat.start_session()
    again = await services.chat.start_session(start.session_token)

    assert again.is_existing
    assert again.session_token == start.session_token
    assert again.conversation_id == start.conversation_id
    assert again.welcome_message is None


@pytest.mark.asyncio
async def test_resolved_session_gets_fresh_token(services):
    """Test that a resolved session's token is not reused."""
    start = await services.chat.start_session()
    conversation = await services.repository.get_conversation_by_token(start.session_token)
    await services.conversations.resolve(conversation)

    again = await services.chat.start_session(start.session_token)

    assert not again.is_existing
    assert again.session_token != start.session_token


@pytest.mark.asyncio
async def test_ai_reply_flow(services, broker, engine):
    """Test a customer message answered by the assistant."""
    start = await services.chat.start_session(context={"product_viewed": "Oak"})
    token = start.session_token

    reply = await services.chat.handle_message(
        token, "  Do you offer local pickup or delivery?  ", {"product_viewed": "Oak"}
    )

    assert reply.ai_response.message == engine.reply
    assert not reply.needs_human
    assert not reply.degraded
    history, context = engine.calls[0]
    assert history == [(Sender.CUSTOMER, "Do you offer local pickup or delivery?")]
    assert "Oak" in context

    conversation = await services.repository.get_conversation_by_token(token)
    assert conversation.status == Status.AI_HANDLING
    messages = await services.repository.get_messages(conversation.id)
    assert [m.sender for m in messages] == [Sender.CUSTOMER, Sender.AI]
    assert messages[0].id == reply.message_id
    assert messages[1].id == reply.ai_response.id

    names = [e.name for e in broker.events(chat_channel(token))]
    assert names == ["new-message", "ai-responding", "new-message", "ai-done", "conversation-updated"]


@pytest.mark.asyncio
async def test_explicit_human_request_scenario(services, broker, engine, notifier):
    """Test asking for a person escalates without an AI reply."""
    start = await services.chat.start_session()

    reply = await services.chat.handle_message(start.session_token, "I want to speak to a person")
    await services.notifications.drain()

    conversation = await services.repository.get_conversation_by_token(start.session_token)
    assert conversation.status == Status.NEEDS_ATTENTION
    assert conversation.requires_human
    messages = await services.repository.get_messages(conversation.id)
    assert [m.sender for m in messages] == [Sender.CUSTOMER]
    assert engine.calls == []

    assert reply.ai_response is None
    assert reply.needs_human
    assert reply.notice == HANDOFF_NOTICE
    assert reply.escalation_reasons == [EscalationReason.EXPLICIT_HUMAN_REQUEST]
    alerts = broker.events(ADMIN_CHANNEL, "needs-attention")
    assert alerts[0].payload["reasons"] == ["explicit_human_request"]
    assert ("needs_attention", start.session_token, [EscalationReason.EXPLICIT_HUMAN_REQUEST]) in notifier.sent


@pytest.mark.asyncio
async def test_urgent_message_still_gets_reply_then_escalates(services):
    """Test an urgent message gets a reply and is escalated."""
    start = await services.chat.start_session()

    reply = await services.chat.handle_message(start.session_token, "I need a quote ASAP")

    assert reply.ai_response is not None
    assert reply.needs_human
    assert reply.escalation_reasons == [EscalationReason.URGENT]
    conversation = await services.repository.get_conversation_by_token(start.session_token)
    assert conversation.status == Status.NEEDS_ATTENTION


@pytest.mark.asyncio
async def test_escalation_is_idempotent(services, broker, notifier):
    """Test repeated escalation alerts admins but emails once."""
    start = await services.chat.start_session()
    token = start.session_token

    await services.chat.handle_message(token, "This is urgent")
    await services.chat.handle_message(token, "Seriously, it is urgent")
    await services.notifications.drain()

    conversation = await services.repository.get_conversation_by_token(token)
    assert conversation.status == Status.NEEDS_ATTENTION
    alerts = broker.events(ADMIN_CHANNEL, "needs-attention")
    assert [a.payload["status_changed"] for a in alerts] == [True, False]
    assert notifier.kinds().count("needs_attention") == 1


@pytest.mark.asyncio
async def test_needs_attention_conversation_still_gets_ai_replies(services):
    """Test the assistant keeps answering until a human joins."""
    start = await services.chat.start_session()
    await services.chat.handle_message(start.session_token, "This is urgent")

    reply = await services.chat.handle_message(start.session_token, "What are your hours?")

    assert reply.ai_response is not None


@pytest.mark.asyncio
async def test_human_attended_conversation_gets_no_ai_reply(services, engine):
    """Test no AI reply once an agent has taken over."""
    start = await services.chat.start_session()
    conversation = await services.repository.get_conversation_by_token(start.session_token)
    await services.conversations.take_over(conversation)

    reply = await services.chat.handle_message(start.session_token, "Are you there?")

    assert reply.human_handling
    assert reply.ai_response is None
    assert engine.calls == []
    messages = await services.repository.get_messages(conversation.id)
    assert [m.sender for m in messages] == [Sender.CUSTOMER]


@pytest.mark.asyncio
async def test_takeover_during_completion_drops_ai_reply(settings, repository, notifier):
    """Test an AI reply finishing after a takeover is discarded."""
    broker = InMemoryBroker()
    engine = FakeEngine(delay=0.05)
    services = build_services(
        settings, repository=repository, publisher=broker, engine=engine, notifier=notifier
    )
    start = await services.chat.start_session()
    conversation = await repository.get_conversation_by_token(start.session_token)

    pending = asyncio.create_task(
        services.chat.handle_message(start.session_token, "What's this week's deal?")
    )
    await asyncio.sleep(0.01)
    await services.conversations.take_over(conversation)
    reply = await pending

    assert reply.ai_response is None
    assert reply.human_handling
    messages = await repository.get_messages(conversation.id)
    assert Sender.AI not in [m.sender for m in messages]
    stored = await repository.get_conversation(conversation.id)
    assert stored.status == Status.HUMAN_HANDLING


@pytest.mark.asyncio
async def test_completion_failure_falls_back_and_escalates(services, engine):
    """Test the fallback reply when the engine fails."""
    engine.error = CompletionEngineFailure("quota exceeded")
    start = await services.chat.start_session()

    reply = await services.chat.handle_message(start.session_token, "What are your hours?")

    assert reply.ai_response.message == FALLBACK_MESSAGE
    assert reply.ai_response.confidence == 0.0
    assert reply.needs_human
    assert EscalationReason.COMPLETION_FAILURE in reply.escalation_reasons
    assert EscalationReason.ASSISTANT_FLAGGED in reply.escalation_reasons
    conversation = await services.repository.get_conversation_by_token(start.session_token)
    assert conversation.status == Status.NEEDS_ATTENTION


@pytest.mark.asyncio
async def test_completion_timeout_falls_back(services, engine):
    """Test the fallback reply when the engine times out."""
    engine.delay = 5.0
    services.chat.settings = services.settings.model_copy(
        update={"completion_timeout_seconds": 0.01}
    )
    start = await services.chat.start_session()

    reply = await services.chat.handle_message(start.session_token, "What are your hours?")

    assert reply.ai_response.message == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_resolved_conversation_rejects_messages(services):
    """Test sending to a resolved conversation."""
    start = await services.chat.start_session()
    conversation = await services.repository.get_conversation_by_token(start.session_token)
    await services.conversations.resolve(conversation)

    with pytest.raises(ConversationResolved):
        await services.chat.handle_message(start.session_token, "Hello?")
    assert await services.repository.count_messages(conversation.id) == 0


@pytest.mark.asyncio
async def test_invalid_message_rejected_before_rate_limit(services):
    """Test invalid messages do not count against the rate limit."""
    with pytest.raises(ValidationError):
        await services.chat.handle_message("chat_a", "   ")
    assert await services.rate_limiter.remaining("chat_a") == 15


@pytest.mark.asyncio
async def test_rate_limit_applies_to_customer_messages(services, clock):
    """Test the per-session rate limit and its window."""
    start = await services.chat.start_session()
    for _ in range(15):
        await services.chat.handle_message(start.session_token, "What are your hours?")

    with pytest.raises(RateLimitExceeded):
        await services.chat.handle_message(start.session_token, "What are your hours?")

    clock.advance(60)
    reply = await services.chat.handle_message(start.session_token, "What are your hours?")
    assert reply.ai_response is not None


@pytest.mark.asyncio
async def test_degraded_when_store_is_down(settings, broker, notifier):
    """Test degraded replies when the store is unreachable."""
    engine = FakeEngine(reply="We open at 9.")
    services = build_services(
        settings,
        repository=UnavailableRepository(),
        publisher=broker,
        engine=engine,
        notifier=notifier,
    )
    before = CUSTOM_REGISTRY.get_sample_value("degraded_responses_total") or 0.0

    start = await services.chat.start_session()
    reply = await services.chat.handle_message(start.session_token, "When do you open?")

    assert start.degraded
    assert reply.degraded
    assert str(reply.message_id).startswith("temp_")
    assert str(reply.ai_response.id).startswith("temp_")
    assert reply.ai_response.message == "We open at 9."
    assert engine.calls[0][0] == [(Sender.CUSTOMER, "When do you open?")]
    assert broker.events() == []
    assert CUSTOM_REGISTRY.get_sample_value("degraded_responses_total") == before + 1


@pytest.mark.asyncio
async def test_degraded_reply_keeps_stored_customer_message_id(settings, broker, notifier):
    """Test a degraded reply reports the id of the stored customer message."""
    class ReplyCommitFails(InMemoryRepository):
        async def commit(self, conversation_id, changes=None, message=None, event=None, **kwargs):
            if message is not None and message.sender == Sender.AI:
                raise StoreUnavailable("connection reset")
            return await super().commit(conversation_id, changes, message, event, **kwargs)

    repository = ReplyCommitFails()
    services = build_services(
        settings, repository=repository, publisher=broker, engine=FakeEngine(), notifier=notifier
    )
    start = await services.chat.start_session()

    reply = await services.chat.handle_message(start.session_token, "Do you deliver?")

    assert reply.degraded
    messages = await repository.get_messages(start.conversation_id)
    assert [m.sender for m in messages] == [Sender.CUSTOMER]
    assert reply.message_id == messages[0].id
    assert str(reply.ai_response.id).startswith("temp_")


@pytest.mark.asyncio
async def test_degraded_when_conversation_missing(services, broker):
    """Test degraded replies for an unknown session."""
    reply = await services.chat.handle_message("chat_never_started", "Hello")

    assert reply.degraded
    assert reply.ai_response is not None
    assert broker.events() == []


@pytest.mark.asyncio
async def test_degraded_mode_survives_engine_failure(settings, broker, notifier):
    """Test degraded mode when the engine fails too."""
    services = build_services(
        settings,
        repository=UnavailableRepository(),
        publisher=broker,
        engine=FakeEngine(error=RuntimeError("boom")),
        notifier=notifier,
    )

    reply = await services.chat.handle_message("chat_a", "Hello")

    assert reply.degraded
    assert reply.ai_response.message == FALLBACK_MESSAGE
    assert reply.needs_human


@pytest.mark.asyncio
async def test_history_requires_known_session(services):
    """Test fetching history for known and unknown sessions."""
    with pytest.raises(ConversationNotFound):
        await services.chat.get_history("chat_missing")

    start = await services.chat.start_session()
    await services.chat.handle_message(start.session_token, "Hi")
    detail = await services.chat.get_history(start.session_token)
    assert [m.sender for m in detail.messages] == [Sender.CUSTOMER, Sender.AI]


@pytest.mark.asyncio
async def test_long_conversation_sends_latest_turn_to_engine(services, engine, repository):
    """Test the engine sees the newest message in a long conversation."""
    start = await services.chat.start_session()
    for i in range(501):
        await repository.commit(
            start.conversation_id, message=NewMessage(sender=Sender.CUSTOMER, body=f"old {i}")
        )

    await services.chat.handle_message(start.session_token, "What is the latest deal?")

    history, _ = engine.calls[-1]
    assert len(history) == 502
    assert history[-1] == (Sender.CUSTOMER, "What is the latest deal?")
    detail = await services.chat.get_history(start.session_token)
    assert len(detail.messages) == 503
    assert detail.messages[-1].sender == Sender.AI
    admin_detail = await services.admin.conversation_detail(start.session_token)
    assert len(admin_detail.messages) == 503


@pytest.mark.asyncio
async def test_lead_capture(services, notifier):
    """Test capturing lead contact details."""
    start = await services.chat.start_session()

    conversation = await services.chat.capture_lead(
        start.session_token, "  Ada Lovelace ", "ADA@Example.com", "555-0100"
    )
    await services.notifications.drain()

    assert conversation.lead.name == "Ada Lovelace"
    assert conversation.lead.email == "ada@example.com"
    assert conversation.lead.phone == "555-0100"
    assert "lead_captured" in notifier.kinds()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name,email,phone",
    [
        ("A", "ada@example.com", "5550100"),
        ("Ada", "not-an-email", "5550100"),
        ("Ada", "ada@example.com", "123"),
        ("Ada", None, "5550100"),
    ],
)
async def test_lead_capture_requires_every_field(services, name, email, phone):
    """Test lead capture rejects missing or invalid fields."""
    start = await services.chat.start_session()
    with pytest.raises(ValidationError):
        await services.chat.capture_lead(start.session_token, name, email, phone)


@pytest.mark.asyncio
async def test_notifier_failure_does_not_fail_request(settings, broker):
    """Test a failing notifier does not fail the request."""
    class BrokenNotifier(RecordingNotifier):
        async def new_conversation(self, conversation):
            raise OSError("smtp down")

    services = build_services(
        settings, publisher=broker, engine=FakeEngine(), notifier=BrokenNotifier()
    )

    start = await services.chat.start_session()
    await services.notifications.drain()

    assert start.conversation_id is not None
