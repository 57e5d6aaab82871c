"""The single write path for messages from every sender."""

from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import InvalidTransition, ValidationError
from ..domain.models import CommitResult, ConversationChanges, Message, NewMessage, Sender
from ..domain.state_machine import Event
from ..observability import MESSAGES
from ..repositories.base import Repository

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 2000


def validate_body(body: Any, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Return the trimmed body or raise :class:`ValidationError`."""
    if not isinstance(body, str) or not body:
        raise ValidationError("Message is required")
    trimmed = body.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")
    if len(trimmed) > max_length:
        raise ValidationError(f"Message is too long (max {max_length} characters)")
    return trimmed


class MessagePipeline:
    """Validates and persists messages, returning the canonical stored record.

    The returned :class:`Message` is what gets broadcast, unchanged, so every
    subscriber converges on the same id and timestamp.
    """

    def __init__(self, repository: Repository, max_length: int = MAX_MESSAGE_LENGTH) -> None:
        self.repository = repository
        self.max_length = max_length

    def validate(self, body: Any) -> str:
        return validate_body(body, self.max_length)

    async def commit(
        self,
        conversation_id: UUID,
        sender: Sender,
        body: Any,
        metadata: Optional[Dict[str, Any]] = None,
        changes: Optional[ConversationChanges] = None,
        event: Optional[Event] = None,
    ) -> CommitResult:
        """Persist one message together with optional changes and a status event.

        If ``event`` is rejected by the state machine nothing is written and
        ``applied`` is False. A closing message committed with
        ``Event.RESOLVE`` is stored before the status flips.
        """
        trimmed = self.validate(body)
        result = await self.repository.commit(
            conversation_id,
            changes=changes,
            message=NewMessage(sender=sender, body=trimmed, metadata=metadata or {}),
            event=event,
        )
        if result.applied:
            MESSAGES.labels(sender=sender.value).inc()
        return result

    async def submit(
        self,
        conversation_id: UUID,
        sender: Sender,
        body: Any,
        metadata: Optional[Dict[str, Any]] = None,
        changes: Optional[ConversationChanges] = None,
        event: Optional[Event] = None,
    ) -> Message:
        """Persist one message and return it.

        Raises ``ValidationError`` for bad bodies, ``ConversationResolved`` for
        terminal conversations and ``InvalidTransition`` when ``event`` is
        rejected.
        """
        result = await self.commit(conversation_id, sender, body, metadata, changes, event)
        if not result.applied:
            raise InvalidTransition(f"Cannot {event.value}: {result.rejection}")
        return result.message

    async def history(self, conversation_id: UUID) -> List[Message]:
        """Every message of the conversation, oldest first."""
        return await self.repository.get_messages(conversation_id)
