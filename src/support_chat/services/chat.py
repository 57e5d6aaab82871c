"""Customer-facing chat flow, including the degraded-mode path."""

import re
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from ..api.rate_limiter import RateLimiter
from ..config import Settings
from ..domain.errors import (
    ChatError,
    ConversationNotFound,
    ConversationResolved,
    StoreUnavailable,
    ValidationError,
)
from ..domain.models import (
    CommitResult,
    CompletionResult,
    Conversation,
    ConversationChanges,
    EscalationReason,
    LeadContact,
    Message,
    SentimentAnalysis,
    Sender,
    Status,
    utcnow,
)
from ..domain.state_machine import Event
from ..observability import DEGRADED_RESPONSES
from ..realtime.fanout import FanOut
from ..repositories.base import Repository
from .conversation import ConversationService
from .escalation import analyze_sentiment, decide
from .llm import (
    CompletionEngine,
    build_context,
    complete_with_fallback,
    suggested_questions,
    transcript_from,
)
from .notifications import NotificationDispatcher
from .pipeline import MessagePipeline
from .session import SessionIdentityStore

logger = structlog.get_logger()

WELCOME_MESSAGE = "Hi there! How can I help you today?"

HANDOFF_NOTICE = (
    "I'm connecting you with a member of our team. "
    "Someone will be with you shortly."
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class AIResponse(BaseModel):
    id: Union[int, str]
    message: str
    confidence: float


class ChatReply(BaseModel):
    """Outcome of one customer message."""

    success: bool = True
    message_id: Union[int, str]
    ai_response: Optional[AIResponse] = None
    needs_human: bool = False
    human_handling: bool = False
    degraded: bool = False
    escalation_reasons: List[EscalationReason] = Field(default_factory=list)
    notice: Optional[str] = None


class SessionStart(BaseModel):
    session_token: str
    conversation_id: Optional[UUID] = None
    status: Optional[Status] = None
    is_existing: bool = False
    degraded: bool = False
    welcome_message: Optional[str] = None
    suggested_questions: List[str] = Field(default_factory=list)


class ConversationDetail(BaseModel):
    conversation: Conversation
    messages: List[Message]


class ChatService:
    """Runs the customer path from validation to escalation."""

    def __init__(
        self,
        repository: Repository,
        pipeline: MessagePipeline,
        conversations: ConversationService,
        fanout: FanOut,
        engine: CompletionEngine,
        rate_limiter: RateLimiter,
        sessions: SessionIdentityStore,
        notifications: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.conversations = conversations
        self.fanout = fanout
        self.engine = engine
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.notifications = notifications
        self.settings = settings

    async def start_session(
        self,
        session_token: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
    ) -> SessionStart:
        """Resume the open conversation for a token or start a new one.

        A token whose conversation was resolved is never reused.
        """
        try:
            if session_token:
                existing = await self.repository.get_conversation_by_token(session_token)
                if existing is not None and not existing.is_resolved:
                    return SessionStart(
                        session_token=session_token,
                        conversation_id=existing.id,
                        status=existing.status,
                        is_existing=True,
                    )
                if existing is not None:
                    session_token = None

            token = session_token or self.sessions.issue()
            conversation = await self.repository.create_conversation(
                token,
                {
                    **(context or {}),
                    "started_at": utcnow().isoformat(),
                    "user_agent": user_agent,
                },
            )
        except StoreUnavailable:
            logger.warning("session_start_degraded")
            return SessionStart(
                session_token=session_token or self.sessions.issue(),
                degraded=True,
                welcome_message=WELCOME_MESSAGE,
                suggested_questions=suggested_questions(),
            )

        await self.fanout.notify_new_conversation(conversation)
        self.notifications.new_conversation(conversation)
        logger.info("chat_session_started", session_token=token)
        return SessionStart(
            session_token=token,
            conversation_id=conversation.id,
            status=conversation.status,
            welcome_message=WELCOME_MESSAGE,
            suggested_questions=suggested_questions(),
        )

    async def handle_message(
        self,
        session_token: str,
        body: Any,
        context: Optional[Dict[str, Any]] = None,
    ) -> ChatReply:
        text = self.pipeline.validate(body)
        await self.rate_limiter.check(session_token)
        prompt_context = build_context(context)
        analysis = analyze_sentiment(text)

        accepted: Optional[Message] = None
        try:
            conversation = await self.repository.get_conversation_by_token(session_token)
            if conversation is None:
                logger.warning("conversation_missing_degraded", session_token=session_token)
            else:
                accepted = await self._accept(conversation, text, analysis, context or {})
                return await self._respond(conversation, accepted, analysis, prompt_context)
        except StoreUnavailable as e:
            logger.warning("store_unavailable_degraded", session_token=session_token, error=e.message)
        except ChatError:
            raise
        except Exception:
            logger.exception("message_processing_failed", session_token=session_token)
        return await self._degraded(text, prompt_context, accepted)

    async def _accept(
        self,
        conversation: Conversation,
        text: str,
        analysis: SentimentAnalysis,
        context: Dict[str, Any],
    ) -> Message:
        """Store the customer message."""
        if conversation.is_resolved:
            raise ConversationResolved()
        return await self.pipeline.submit(
            conversation.id,
            Sender.CUSTOMER,
            text,
            metadata={"sentiment": analysis.sentiment.value, "context": context},
        )

    async def _respond(
        self,
        conversation: Conversation,
        customer_message: Message,
        analysis: SentimentAnalysis,
        prompt_context: str,
    ) -> ChatReply:
        session_token = conversation.session_token
        await self.fanout.broadcast_message(session_token, customer_message)

        if conversation.human_attended:
            return ChatReply(message_id=customer_message.id, human_handling=True)

        history = await self.pipeline.history(conversation.id)

        if analysis.explicit_human_request:
            verdict = decide(
                analysis.sentiment,
                explicit_human_request=True,
                confidence=1.0,
                message_count=len(history),
                confidence_threshold=self.settings.escalation_confidence_threshold,
                long_conversation=self.settings.escalation_message_count,
            )
            await self.conversations.escalate(conversation, verdict)
            return ChatReply(
                message_id=customer_message.id,
                needs_human=True,
                escalation_reasons=verdict.reasons,
                notice=HANDOFF_NOTICE,
            )

        await self.fanout.ai_responding(session_token, True)
        try:
            result = await complete_with_fallback(
                self.engine,
                transcript_from(history),
                prompt_context,
                self.settings.completion_timeout_seconds,
            )
            commit = await self._commit_reply(conversation.id, result)
            if commit is not None and commit.applied:
                await self.fanout.broadcast_message(session_token, commit.message)
        finally:
            await self.fanout.ai_responding(session_token, False)

        if commit is None:
            logger.info("ai_reply_dropped", session_token=session_token, reason="resolved")
            return ChatReply(message_id=customer_message.id)
        if not commit.applied:
            # An agent took over while the reply was being generated.
            logger.info("ai_reply_dropped", session_token=session_token, reason=commit.rejection)
            return ChatReply(message_id=customer_message.id, human_handling=True)

        ai_message = commit.message
        if commit.status_changed:
            await self.fanout.conversation_updated(commit.conversation)

        verdict = decide(
            analysis.sentiment,
            explicit_human_request=False,
            confidence=result.confidence,
            message_count=len(history),
            flagged_for_human=result.flagged_for_human,
            completion_failed=result.failed,
            confidence_threshold=self.settings.escalation_confidence_threshold,
            long_conversation=self.settings.escalation_message_count,
        )
        if verdict.requires_human:
            await self.conversations.escalate(commit.conversation, verdict)

        return ChatReply(
            message_id=customer_message.id,
            ai_response=AIResponse(
                id=ai_message.id, message=ai_message.body, confidence=result.confidence
            ),
            needs_human=verdict.requires_human,
            escalation_reasons=verdict.reasons,
        )

    async def _commit_reply(
        self, conversation_id: UUID, result: CompletionResult
    ) -> Optional[CommitResult]:
        """Store the reply unless the conversation left AI handling. None if resolved."""
        try:
            return await self.pipeline.commit(
                conversation_id,
                Sender.AI,
                result.text,
                metadata={
                    "confidence": result.confidence,
                    "flagged_for_human": result.flagged_for_human,
                    "fallback": result.failed,
                },
                event=Event.AI_REPLIED,
            )
        except ConversationResolved:
            return None

    async def _degraded(
        self, text: str, prompt_context: str, accepted: Optional[Message] = None
    ) -> ChatReply:
        """Answer from the completion engine alone. The reply is neither stored nor broadcast.

        ``accepted`` is the customer message if it was stored before the failure.
        """
        result = await complete_with_fallback(
            self.engine,
            [(Sender.CUSTOMER, text)],
            prompt_context,
            self.settings.completion_timeout_seconds,
        )
        DEGRADED_RESPONSES.inc()
        stamp = uuid4().hex
        return ChatReply(
            message_id=accepted.id if accepted is not None else f"temp_{stamp}",
            ai_response=AIResponse(
                id=f"temp_ai_{stamp}", message=result.text, confidence=result.confidence
            ),
            needs_human=result.flagged_for_human,
            degraded=True,
        )

    async def get_history(self, session_token: str) -> ConversationDetail:
        conversation = await self.repository.get_conversation_by_token(session_token)
        if conversation is None:
            raise ConversationNotFound()
        messages = await self.pipeline.history(conversation.id)
        return ConversationDetail(conversation=conversation, messages=messages)

    async def capture_lead(
        self, session_token: str, name: Any, email: Any, phone: Any
    ) -> Conversation:
        """Store contact details; all three fields are required."""
        lead = normalize_lead(name, email, phone)
        conversation = await self.repository.get_conversation_by_token(session_token)
        if conversation is None:
            raise ConversationNotFound()

        result = await self.repository.commit(
            conversation.id, changes=ConversationChanges(lead=lead)
        )
        self.notifications.lead_captured(result.conversation)
        logger.info("lead_captured", session_token=session_token)
        return result.conversation


def normalize_lead(name: Any, email: Any, phone: Any) -> LeadContact:
    name = name.strip() if isinstance(name, str) else ""
    email = email.strip().lower() if isinstance(email, str) else ""
    phone = phone.strip() if isinstance(phone, str) else ""

    if len(name) < 2:
        raise ValidationError("Please provide your name")
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please provide a valid email address")
    if len(phone) < 7:
        raise ValidationError("Please provide a valid phone number")

    return LeadContact(name=name[:255], email=email[:255], phone=phone[:25])
