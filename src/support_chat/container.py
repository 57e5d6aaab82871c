"""Wires the services together from settings."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog

from .api.rate_limiter import InMemorySlidingWindowStore, RateLimiter
from .config import Settings
from .realtime.broker import ChannelPublisher, InMemoryBroker
from .realtime.fanout import FanOut
from .realtime.pusher import ChannelSigner, PusherPublisher
from .repositories.base import Repository
from .repositories.memory import InMemoryRepository
from .services.admin import AdminController
from .services.channels import ChannelAccess
from .services.chat import ChatService
from .services.conversation import ConversationService
from .services.housekeeping import Housekeeper
from .services.llm import CompletionEngine, GeminiCompletionEngine
from .services.notifications import EmailNotifier, NotificationDispatcher, Notifier
from .services.pipeline import MessagePipeline
from .services.session import SessionIdentityStore

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    repository: Repository
    publisher: ChannelPublisher
    rate_limiter: RateLimiter
    notifications: NotificationDispatcher
    conversations: ConversationService
    chat: ChatService
    admin: AdminController
    channels: ChannelAccess
    housekeeper: Housekeeper


def build_publisher(settings: Settings) -> ChannelPublisher:
    if settings.publisher == "pusher":
        if not (settings.pusher_app_id and settings.pusher_key and settings.pusher_secret):
            raise ValueError("Pusher publisher requires app id, key and secret")
        return PusherPublisher(
            settings.pusher_app_id,
            settings.pusher_key,
            settings.pusher_secret,
            settings.pusher_cluster,
        )
    return InMemoryBroker()


def build_signer(settings: Settings) -> Optional[ChannelSigner]:
    if settings.pusher_key and settings.pusher_secret:
        return ChannelSigner(settings.pusher_key, settings.pusher_secret)
    return None


def build_services(
    settings: Settings,
    repository: Optional[Repository] = None,
    publisher: Optional[ChannelPublisher] = None,
    engine: Optional[CompletionEngine] = None,
    notifier: Optional[Notifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Services:
    """Build the service graph; any collaborator can be swapped out."""
    repository = repository or InMemoryRepository()
    publisher = publisher or build_publisher(settings)
    engine = engine or GeminiCompletionEngine(settings.gemini_api_key, settings.gemini_model)
    notifications = NotificationDispatcher(notifier or EmailNotifier(settings))
    rate_limiter = rate_limiter or RateLimiter(
        InMemorySlidingWindowStore(),
        max_messages=settings.rate_limit_max_messages,
        window_seconds=settings.rate_limit_window_seconds,
    )

    fanout = FanOut(publisher)
    pipeline = MessagePipeline(repository, settings.max_message_length)
    conversations = ConversationService(
        repository, pipeline, fanout, notifications, agent_id=settings.agent_id
    )
    chat = ChatService(
        repository,
        pipeline,
        conversations,
        fanout,
        engine,
        rate_limiter,
        SessionIdentityStore(timedelta(seconds=settings.session_ttl_seconds)),
        notifications,
        settings,
    )
    admin = AdminController(repository, conversations, settings.admin_secret)
    logger.info("services_built", publisher=type(publisher).__name__)
    return Services(
        settings=settings,
        repository=repository,
        publisher=publisher,
        rate_limiter=rate_limiter,
        notifications=notifications,
        conversations=conversations,
        chat=chat,
        admin=admin,
        channels=ChannelAccess(repository, admin, build_signer(settings)),
        housekeeper=Housekeeper(
            repository, conversations, timedelta(minutes=settings.stale_after_minutes)
        ),
    )
