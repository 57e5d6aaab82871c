"""Broadcasts conversation activity to customer and admin channels."""

import asyncio
from enum import Enum
from typing import Any, Dict, Iterable

import structlog

from ..domain.models import Conversation, EscalationReason, Message, utcnow
from ..observability import PUBLISH_FAILURES
from .broker import ChannelPublisher

logger = structlog.get_logger()

CHAT_CHANNEL_PREFIX = "private-chat-"
ADMIN_CHANNEL = "private-admin-chat"


class ChatEvent(str, Enum):
    NEW_MESSAGE = "new-message"
    NEW_CONVERSATION = "new-conversation"
    NEEDS_ATTENTION = "needs-attention"
    CONVERSATION_UPDATED = "conversation-updated"
    AGENT_JOINED = "agent-joined"
    AGENT_LEFT = "agent-left"
    AI_RESPONDING = "ai-responding"
    AI_DONE = "ai-done"
    CONVERSATION_RESOLVED = "conversation-resolved"


def chat_channel(session_token: str) -> str:
    """Private channel for one conversation."""
    return f"{CHAT_CHANNEL_PREFIX}{session_token}"


def message_payload(message: Message) -> Dict[str, Any]:
    """Canonical broadcast form of a stored message."""
    return {
        "id": message.id,
        "sender": message.sender.value,
        "message": message.body,
        "created_at": message.created_at.isoformat(),
        "metadata": message.metadata,
    }


class FanOut:
    """Publishes events; a failed publish is logged and never raised."""

    def __init__(self, publisher: ChannelPublisher) -> None:
        self.publisher = publisher

    async def _publish(self, channel: str, event: ChatEvent, payload: Dict[str, Any]) -> bool:
        try:
            await self.publisher.publish(channel, event.value, payload)
            return True
        except Exception as e:
            PUBLISH_FAILURES.labels(event=event.value).inc()
            logger.warning("publish_failed", channel=channel, event=event.value, error=str(e))
            return False

    async def _both(self, session_token: str, event: ChatEvent, payload: Dict[str, Any]) -> None:
        await asyncio.gather(
            self._publish(chat_channel(session_token), event, payload),
            self._publish(ADMIN_CHANNEL, event, {**payload, "session_token": session_token}),
        )

    async def broadcast_message(self, session_token: str, message: Message) -> None:
        await self._both(session_token, ChatEvent.NEW_MESSAGE, message_payload(message))

    async def conversation_updated(self, conversation: Conversation) -> None:
        await self._both(
            conversation.session_token,
            ChatEvent.CONVERSATION_UPDATED,
            {
                "status": conversation.status.value,
                "assigned_to": conversation.assigned_to,
                "requires_human": conversation.requires_human,
                "updated_at": conversation.updated_at.isoformat(),
            },
        )

    async def notify_new_conversation(self, conversation: Conversation) -> None:
        await self._publish(
            ADMIN_CHANNEL,
            ChatEvent.NEW_CONVERSATION,
            {
                "id": str(conversation.id),
                "session_token": conversation.session_token,
                "status": conversation.status.value,
                "created_at": conversation.created_at.isoformat(),
                "context": conversation.context,
            },
        )

    async def notify_needs_attention(
        self,
        session_token: str,
        reasons: Iterable[EscalationReason],
        status_changed: bool,
    ) -> None:
        await self._publish(
            ADMIN_CHANNEL,
            ChatEvent.NEEDS_ATTENTION,
            {
                "session_token": session_token,
                "reasons": [r.value for r in reasons],
                "status_changed": status_changed,
                "timestamp": utcnow().isoformat(),
            },
        )

    async def agent_status(self, session_token: str, joined: bool) -> None:
        event = ChatEvent.AGENT_JOINED if joined else ChatEvent.AGENT_LEFT
        await self._publish(chat_channel(session_token), event, {"timestamp": utcnow().isoformat()})

    async def ai_responding(self, session_token: str, responding: bool) -> None:
        event = ChatEvent.AI_RESPONDING if responding else ChatEvent.AI_DONE
        await self._publish(chat_channel(session_token), event, {})

    async def conversation_resolved(self, session_token: str) -> None:
        await self._both(
            session_token, ChatEvent.CONVERSATION_RESOLVED, {"timestamp": utcnow().isoformat()}
        )
