"""Shared fixtures: fake collaborators and a wired service graph."""

import asyncio
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import pytest

from support_chat.api.app import create_app
from support_chat.api.rate_limiter import InMemorySlidingWindowStore, RateLimiter
from support_chat.config import Settings
from support_chat.container import build_services
from support_chat.domain.errors import StoreUnavailable
from support_chat.domain.models import CompletionResult, Conversation, EscalationReason
from support_chat.realtime.broker import InMemoryBroker
from support_chat.repositories.base import Repository
from support_chat.repositories.memory import InMemoryRepository

ADMIN_SECRET = "test-admin-secret"
PUSHER_KEY = "app-key"
PUSHER_SECRET = "app-secret"


class FakeEngine:
    """Completion engine returning a canned reply."""

    def __init__(
        self,
        reply: str = "Happy to help with that!",
        confidence: float = 0.9,
        flagged: bool = False,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ) -> None:
        self.reply = reply
        self.confidence = confidence
        self.flagged = flagged
        self.delay = delay
        self.error = error
        self.calls: List[Tuple[List[Any], str]] = []

    async def complete(self, history: Sequence[Any], context: str) -> CompletionResult:
        self.calls.append((list(history), context))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return CompletionResult(
            text=self.reply, flagged_for_human=self.flagged, confidence=self.confidence
        )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[Any, ...]] = []

    async def new_conversation(self, conversation: Conversation) -> None:
        self.sent.append(("new_conversation", conversation.session_token))

    async def needs_attention(
        self, conversation: Conversation, reasons: Iterable[EscalationReason]
    ) -> None:
        self.sent.append(("needs_attention", conversation.session_token, list(reasons)))

    async def lead_captured(self, conversation: Conversation) -> None:
        self.sent.append(("lead_captured", conversation.session_token))

    def kinds(self) -> List[str]:
        return [entry[0] for entry in self.sent]


class UnavailableRepository(Repository):
    """Every call fails as if the database were down."""

    async def _fail(self, *args, **kwargs):
        raise StoreUnavailable("connection refused")

    get_conversation = _fail
    get_conversation_by_token = _fail
    list_conversations = _fail
    create_conversation = _fail
    commit = _fail
    get_messages = _fail
    count_messages = _fail
    find_stale = _fail
    stats = _fail


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        admin_secret=ADMIN_SECRET,
        completion_timeout_seconds=1.0,
        pusher_key=PUSHER_KEY,
        pusher_secret=PUSHER_SECRET,
    )


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def services(settings, repository, broker, engine, notifier, clock):
    limiter = RateLimiter(
        InMemorySlidingWindowStore(),
        max_messages=settings.rate_limit_max_messages,
        window_seconds=settings.rate_limit_window_seconds,
        clock=clock,
    )
    return build_services(
        settings,
        repository=repository,
        publisher=broker,
        engine=engine,
        notifier=notifier,
        rate_limiter=limiter,
    )


@pytest.fixture
def app(settings, services):
    return create_app(settings, services)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}
