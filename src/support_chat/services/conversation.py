"""Applies state machine events to stored conversations and announces them."""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from ..domain.errors import ConversationResolved, InvalidTransition
from ..domain.models import (
    AI_ASSIGNEE,
    CommitResult,
    Conversation,
    ConversationChanges,
    Sender,
    Verdict,
)
from ..domain.state_machine import Event
from ..observability import ESCALATIONS
from ..realtime.fanout import FanOut
from ..repositories.base import Repository
from .notifications import NotificationDispatcher
from .pipeline import MessagePipeline

logger = structlog.get_logger()


class ConversationService:
    """Owns status and assignment changes for every entry point."""

    def __init__(
        self,
        repository: Repository,
        pipeline: MessagePipeline,
        fanout: FanOut,
        notifications: NotificationDispatcher,
        agent_id: str = "agent",
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.fanout = fanout
        self.notifications = notifications
        self.agent_id = agent_id

    async def _commit(
        self,
        conversation: Conversation,
        event: Event,
        changes: Optional[ConversationChanges] = None,
        body: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CommitResult:
        if body is not None:
            result = await self.pipeline.commit(
                conversation.id, Sender.HUMAN_AGENT, body, metadata, changes, event
            )
        else:
            result = await self.repository.commit(conversation.id, changes=changes, event=event)
        if not result.applied:
            raise InvalidTransition(f"Cannot {event.value.replace('_', ' ')}: {result.rejection}")
        return result

    async def escalate(self, conversation: Conversation, verdict: Verdict) -> bool:
        """Move to ``needs_attention`` once; report the reasons every time.

        Returns True only when the status actually changed.
        """
        if not verdict.requires_human:
            return False
        try:
            result = await self.repository.commit(
                conversation.id,
                changes=ConversationChanges(requires_human=True, sentiment=verdict.sentiment),
                event=Event.ESCALATE,
            )
        except ConversationResolved:
            logger.info("escalation_ignored", session_token=conversation.session_token, reason="resolved")
            return False

        if not result.applied:
            logger.info(
                "escalation_ignored",
                session_token=conversation.session_token,
                reason=result.rejection,
            )
            return False

        for reason in verdict.reasons:
            ESCALATIONS.labels(reason=reason.value).inc()

        changed = result.status_changed
        await self.fanout.notify_needs_attention(
            conversation.session_token, verdict.reasons, status_changed=changed
        )
        if changed:
            await self.fanout.conversation_updated(result.conversation)
            self.notifications.needs_attention(result.conversation, verdict.reasons)

        logger.info(
            "conversation_escalated",
            session_token=conversation.session_token,
            reasons=[r.value for r in verdict.reasons],
            status_changed=changed,
        )
        return changed

    async def take_over(self, conversation: Conversation, body: Optional[str] = None) -> CommitResult:
        result = await self._commit(
            conversation,
            Event.TAKE_OVER,
            ConversationChanges(assigned_to=self.agent_id, requires_human=False),
            body,
            {"action": "take_over"},
        )
        await self.fanout.agent_status(conversation.session_token, joined=True)
        await self.fanout.conversation_updated(result.conversation)
        if result.message is not None:
            await self.fanout.broadcast_message(conversation.session_token, result.message)
        return result

    async def agent_message(self, conversation: Conversation, body: str) -> CommitResult:
        result = await self._commit(
            conversation,
            Event.AGENT_MESSAGE,
            ConversationChanges(assigned_to=self.agent_id),
            body,
            {},
        )
        if not conversation.human_attended:
            await self.fanout.agent_status(conversation.session_token, joined=True)
            await self.fanout.conversation_updated(result.conversation)
        await self.fanout.broadcast_message(conversation.session_token, result.message)
        return result

    async def hand_back(self, conversation: Conversation) -> CommitResult:
        result = await self._commit(
            conversation, Event.HAND_BACK, ConversationChanges(assigned_to=AI_ASSIGNEE)
        )
        await self.fanout.agent_status(conversation.session_token, joined=False)
        await self.fanout.conversation_updated(result.conversation)
        return result

    async def resolve(self, conversation: Conversation, body: Optional[str] = None) -> CommitResult:
        """Resolve, writing the optional closing message before the status flips."""
        result = await self._commit(conversation, Event.RESOLVE, None, body, {"action": "resolve"})
        if result.message is not None:
            await self.fanout.broadcast_message(conversation.session_token, result.message)
        await self.fanout.conversation_resolved(conversation.session_token)
        await self.fanout.conversation_updated(result.conversation)
        return result

    async def expire(self, conversation: Conversation, cutoff: Optional[datetime] = None) -> bool:
        """Close an idle conversation. Returns False if it is no longer eligible.

        With ``cutoff`` nothing is closed if the conversation was updated since then.
        """
        try:
            result = await self.repository.commit(
                conversation.id, event=Event.EXPIRE, updated_before=cutoff
            )
        except ConversationResolved:
            return False
        if not result.applied:
            return False
        await self.fanout.conversation_resolved(conversation.session_token)
        await self.fanout.conversation_updated(result.conversation)
        return True
