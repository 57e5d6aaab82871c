"""Closes conversations the assistant has been left holding."""

from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from ..domain.models import utcnow
from ..domain.state_machine import AI_STATUSES
from ..repositories.base import Repository
from .conversation import ConversationService

logger = structlog.get_logger()


class Housekeeper:
    def __init__(
        self,
        repository: Repository,
        conversations: ConversationService,
        stale_after: timedelta = timedelta(minutes=30),
    ) -> None:
        self.repository = repository
        self.conversations = conversations
        self.stale_after = stale_after

    async def close_stale(self, now: Optional[datetime] = None) -> List[str]:
        """Resolve idle AI-handled conversations. Returns their session tokens."""
        cutoff = (now or utcnow()) - self.stale_after
        closed = []
        for conversation in await self.repository.find_stale(cutoff, AI_STATUSES):
            if await self.conversations.expire(conversation, cutoff):
                closed.append(conversation.session_token)
        logger.info("stale_conversations_closed", count=len(closed))
        return closed
