"""Base repository interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional
from uuid import UUID

from ..domain.models import (
    ChatStats,
    CommitResult,
    Conversation,
    ConversationChanges,
    ConversationSummary,
    Message,
    NewMessage,
    Status,
)
from ..domain.state_machine import Event


class Repository(ABC):
    """Abstract conversation store.

    Implementations raise :class:`~support_chat.domain.errors.StoreUnavailable`
    when the backing store cannot be reached.
    """

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""

    @abstractmethod
    async def get_conversation_by_token(self, session_token: str) -> Optional[Conversation]:
        """Retrieve the most recent conversation opened with ``session_token``."""

    @abstractmethod
    async def list_conversations(
        self, limit: int = 50, offset: int = 0, needs_attention_only: bool = False
    ) -> List[ConversationSummary]:
        """List open conversations, those needing a human first."""

    @abstractmethod
    async def create_conversation(
        self, session_token: str, context: Optional[Dict[str, Any]] = None
    ) -> Conversation:
        """Create a new conversation. The token must not belong to an open conversation."""

    @abstractmethod
    async def commit(
        self,
        conversation_id: UUID,
        changes: Optional[ConversationChanges] = None,
        message: Optional[NewMessage] = None,
        event: Optional[Event] = None,
        updated_before: Optional[datetime] = None,
    ) -> CommitResult:
        """Atomically append ``message``, then apply ``changes`` and ``event``.

        The next status is computed from the stored status with
        :func:`~support_chat.domain.state_machine.transition`. A rejected
        transition writes nothing and returns ``applied=False``. Any write to a
        resolved conversation raises ``ConversationResolved``. With ``updated_before``
        the commit is also rejected if the conversation changed at or after that time.
        """

    @abstractmethod
    async def get_messages(
        self, conversation_id: UUID, limit: Optional[int] = None, offset: int = 0
    ) -> List[Message]:
        """Get messages for a conversation in creation order. ``limit=None`` returns all."""

    @abstractmethod
    async def count_messages(self, conversation_id: UUID) -> int:
        """Number of messages stored for a conversation."""

    @abstractmethod
    async def find_stale(
        self, cutoff: datetime, statuses: FrozenSet[Status]
    ) -> List[Conversation]:
        """Conversations in ``statuses`` whose last update is older than ``cutoff``."""

    @abstractmethod
    async def stats(self, now: datetime) -> ChatStats:
        """Dashboard counters relative to ``now``."""
