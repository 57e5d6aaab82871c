"""In-memory repository implementation."""

import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import ConversationNotFound, ConversationResolved, ValidationError
from ..domain.models import (
    AI_ASSIGNEE,
    ChatStats,
    CommitResult,
    Conversation,
    ConversationChanges,
    ConversationSummary,
    Message,
    NewMessage,
    Status,
    utcnow,
)
from ..domain.state_machine import Event, Rejected, transition
from .base import Repository

logger = structlog.get_logger()

_TICK = timedelta(microseconds=1)


class InMemoryRepository(Repository):
    """Single-process repository guarded by one asyncio lock.

    Callers always receive copies, so a conversation they hold is a snapshot
    and never changes underneath them.
    """

    def __init__(self) -> None:
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._ids = itertools.count(1)
        self._async_lock = asyncio.Lock()
        logger.info("repository_initialized", backend="memory")

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            return conversation.model_copy(deep=True) if conversation else None

    async def get_conversation_by_token(self, session_token: str) -> Optional[Conversation]:
        async with self._async_lock:
            matches = [
                c for c in self._conversations.values() if c.session_token == session_token
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda c: c.created_at)
            return latest.model_copy(deep=True)

    async def list_conversations(
        self, limit: int = 50, offset: int = 0, needs_attention_only: bool = False
    ) -> List[ConversationSummary]:
        async with self._async_lock:
            open_conversations = [
                c
                for c in self._conversations.values()
                if not c.is_resolved and (c.requires_human or not needs_attention_only)
            ]
            # Needing a human first, then most recently updated.
            open_conversations.sort(key=lambda c: c.updated_at, reverse=True)
            open_conversations.sort(key=lambda c: not c.requires_human)

            summaries = []
            for conversation in open_conversations[offset : offset + limit]:
                messages = self._messages.get(conversation.id, [])
                last = messages[-1] if messages else None
                summaries.append(
                    ConversationSummary(
                        conversation=conversation.model_copy(deep=True),
                        message_count=len(messages),
                        last_message=last.body if last else None,
                        last_sender=last.sender if last else None,
                    )
                )
            return summaries

    async def create_conversation(
        self, session_token: str, context: Optional[Dict[str, Any]] = None
    ) -> Conversation:
        async with self._async_lock:
            if any(
                c.session_token == session_token and not c.is_resolved
                for c in self._conversations.values()
            ):
                raise ValidationError("Session token is already in use")

            conversation = Conversation(session_token=session_token, context=context or {})
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=str(conversation.id))
            return conversation.model_copy(deep=True)

    async def commit(
        self,
        conversation_id: UUID,
        changes: Optional[ConversationChanges] = None,
        message: Optional[NewMessage] = None,
        event: Optional[Event] = None,
        updated_before: Optional[datetime] = None,
    ) -> CommitResult:
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.error("conversation_not_found_for_commit", conversation_id=str(conversation_id))
                raise ConversationNotFound()

            previous = conversation.status
            has_changes = changes is not None and not changes.is_empty()
            if conversation.is_resolved and (message is not None or has_changes or event is not None):
                raise ConversationResolved()

            if updated_before is not None and conversation.updated_at >= updated_before:
                return CommitResult(
                    conversation=conversation.model_copy(deep=True),
                    previous_status=previous,
                    applied=False,
                    rejection="conversation was updated",
                )

            target = previous
            if event is not None:
                outcome = transition(previous, event)
                if isinstance(outcome, Rejected):
                    logger.info(
                        "transition_rejected",
                        conversation_id=str(conversation_id),
                        event=event.value,
                        status=previous.value,
                    )
                    return CommitResult(
                        conversation=conversation.model_copy(deep=True),
                        previous_status=previous,
                        applied=False,
                        rejection=outcome.reason,
                    )
                target = outcome

            now = utcnow()
            stored: Optional[Message] = None
            if message is not None:
                stored = self._append(conversation_id, message, now)
            if has_changes:
                self._apply(conversation, changes, now)
            if target != previous:
                conversation.status = target
                if target == Status.RESOLVED:
                    conversation.resolved_at = now
            conversation.updated_at = stored.created_at if stored else now

            return CommitResult(
                conversation=conversation.model_copy(deep=True),
                message=stored.model_copy(deep=True) if stored else None,
                previous_status=previous,
            )

    def _append(self, conversation_id: UUID, message: NewMessage, now: datetime) -> Message:
        messages = self._messages[conversation_id]
        created_at = now
        # Creation times stay strictly increasing within a conversation.
        if messages and created_at <= messages[-1].created_at:
            created_at = messages[-1].created_at + _TICK
        stored = Message(
            id=next(self._ids),
            conversation_id=conversation_id,
            sender=message.sender,
            body=message.body,
            created_at=created_at,
            metadata=dict(message.metadata),
        )
        messages.append(stored)
        logger.info(
            "message_added",
            conversation_id=str(conversation_id),
            message_id=stored.id,
            sender=stored.sender.value,
        )
        return stored

    @staticmethod
    def _apply(conversation: Conversation, changes: ConversationChanges, now: datetime) -> None:
        if changes.assigned_to is not None:
            conversation.assigned_to = changes.assigned_to
        if changes.requires_human is not None:
            conversation.requires_human = changes.requires_human
        if changes.sentiment is not None:
            conversation.sentiment = changes.sentiment
        if changes.lead is not None:
            conversation.lead = changes.lead
            conversation.lead_captured_at = conversation.lead_captured_at or now

    async def get_messages(
        self, conversation_id: UUID, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        async with self._async_lock:
            if conversation_id not in self._conversations:
                logger.error(
                    "conversation_not_found_for_messages",
                    conversation_id=str(conversation_id),
                )
                raise ConversationNotFound()

            messages = sorted(
                self._messages.get(conversation_id, []),
                key=lambda m: (m.created_at, m.id),
            )
            end = None if limit is None else offset + limit
            return [m.model_copy(deep=True) for m in messages[offset:end]]

    async def count_messages(self, conversation_id: UUID) -> int:
        async with self._async_lock:
            return len(self._messages.get(conversation_id, []))

    async def find_stale(
        self, cutoff: datetime, statuses: FrozenSet[Status]
    ) -> List[Conversation]:
        async with self._async_lock:
            return [
                c.model_copy(deep=True)
                for c in self._conversations.values()
                if c.status in statuses and c.updated_at < cutoff
            ]

    async def stats(self, now: datetime) -> ChatStats:
        day_ago = now - timedelta(hours=24)
        async with self._async_lock:
            conversations = list(self._conversations.values())
        open_conversations = [c for c in conversations if not c.is_resolved]
        return ChatStats(
            active_count=sum(
                1 for c in conversations if c.status in (Status.ACTIVE, Status.AI_HANDLING)
            ),
            needs_attention_count=sum(1 for c in open_conversations if c.requires_human),
            resolved_today=sum(
                1
                for c in conversations
                if c.is_resolved and c.resolved_at is not None and c.resolved_at > day_ago
            ),
            new_today=sum(1 for c in conversations if c.created_at > day_ago),
            ai_handling_count=sum(1 for c in open_conversations if c.assigned_to == AI_ASSIGNEE),
            human_handling_count=sum(
                1 for c in open_conversations if c.assigned_to != AI_ASSIGNEE
            ),
        )
