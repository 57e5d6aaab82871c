"""Secret-gated operator actions on live conversations."""

import hmac
from enum import Enum
from typing import List, Optional

import structlog
from pydantic import BaseModel

from ..domain.errors import ConversationNotFound, Unauthorized, ValidationError
from ..domain.models import ChatStats, Conversation, ConversationSummary, Status, utcnow
from ..repositories.base import Repository
from .chat import ConversationDetail
from .conversation import ConversationService

logger = structlog.get_logger()


class AdminAction(str, Enum):
    TAKE_OVER = "take_over"
    SEND_MESSAGE = "send_message"
    HAND_BACK = "hand_back_to_ai"
    RESOLVE = "resolve"


class InterventionResult(BaseModel):
    success: bool = True
    action: AdminAction
    status: Status
    assigned_to: str
    message_id: Optional[int] = None


class ConversationList(BaseModel):
    conversations: List[ConversationSummary]
    stats: ChatStats


class AdminController:
    def __init__(
        self,
        repository: Repository,
        conversations: ConversationService,
        secret: str,
    ) -> None:
        self.repository = repository
        self.conversations = conversations
        self._secret = secret

    def authorize(self, provided: Optional[str]) -> None:
        """Raise :class:`Unauthorized` unless ``provided`` matches the admin secret.

        With no secret configured every request is rejected.
        """
        if not self._secret:
            logger.warning("admin_secret_not_configured")
            raise Unauthorized("Admin access is not configured")
        if not provided or not hmac.compare_digest(
            provided.encode("utf-8"), self._secret.encode("utf-8")
        ):
            logger.warning("admin_unauthorized")
            raise Unauthorized()

    async def _conversation(self, session_token: str) -> Conversation:
        conversation = await self.repository.get_conversation_by_token(session_token)
        if conversation is None:
            raise ConversationNotFound()
        return conversation

    async def list_conversations(
        self, filter: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> ConversationList:
        if filter not in (None, "", "all", "needs_attention"):
            raise ValidationError(f"Unknown filter: {filter}")
        summaries = await self.repository.list_conversations(
            limit=limit, offset=offset, needs_attention_only=filter == "needs_attention"
        )
        stats = await self.repository.stats(utcnow())
        return ConversationList(conversations=summaries, stats=stats)

    async def conversation_detail(self, session_token: str) -> ConversationDetail:
        conversation = await self._conversation(session_token)
        messages = await self.repository.get_messages(conversation.id)
        return ConversationDetail(conversation=conversation, messages=messages)

    async def act(
        self, session_token: str, action: str, message: Optional[str] = None
    ) -> InterventionResult:
        try:
            action = AdminAction(action)
        except ValueError:
            raise ValidationError(f"Unknown action: {action}") from None

        conversation = await self._conversation(session_token)
        if message is not None and not message.strip() and action != AdminAction.SEND_MESSAGE:
            message = None

        if action == AdminAction.TAKE_OVER:
            result = await self.conversations.take_over(conversation, message)
        elif action == AdminAction.SEND_MESSAGE:
            result = await self.conversations.agent_message(conversation, message)
        elif action == AdminAction.HAND_BACK:
            result = await self.conversations.hand_back(conversation)
        else:
            result = await self.conversations.resolve(conversation, message)

        logger.info(
            "admin_action",
            session_token=session_token,
            action=action.value,
            status=result.conversation.status.value,
        )
        return InterventionResult(
            action=action,
            status=result.conversation.status,
            assigned_to=result.conversation.assigned_to,
            message_id=result.message.id if result.message else None,
        )
