"""Domain models for the support chat engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

AI_ASSIGNEE = "ai"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Status(str, Enum):
    """Conversation handling status."""

    ACTIVE = "active"
    AI_HANDLING = "ai_handling"
    NEEDS_ATTENTION = "needs_attention"
    HUMAN_HANDLING = "human_handling"
    RESOLVED = "resolved"


class Sender(str, Enum):
    """Author of a message."""

    CUSTOMER = "customer"
    AI = "ai"
    HUMAN_AGENT = "human_agent"


class Sentiment(str, Enum):
    """Classification of the latest customer message."""

    NEEDS_HUMAN = "needs_human"
    URGENT = "urgent"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class EscalationReason(str, Enum):
    """Why a conversation was flagged for a human."""

    EXPLICIT_HUMAN_REQUEST = "explicit_human_request"
    URGENT = "urgent"
    NEGATIVE_SENTIMENT = "negative_sentiment"
    ASSISTANT_FLAGGED = "assistant_flagged"
    LOW_CONFIDENCE = "low_confidence"
    LONG_CONVERSATION = "long_conversation"
    COMPLETION_FAILURE = "completion_failure"


class LeadContact(BaseModel):
    """Customer contact details captured during a chat."""

    name: str
    email: str
    phone: str


class Conversation(BaseModel):
    """One support interaction."""

    id: UUID = Field(default_factory=uuid4)
    session_token: str
    status: Status = Status.ACTIVE
    assigned_to: str = AI_ASSIGNEE
    requires_human: bool = False
    sentiment: Optional[Sentiment] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    lead: Optional[LeadContact] = None
    lead_captured_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status == Status.RESOLVED

    @property
    def human_attended(self) -> bool:
        return self.assigned_to != AI_ASSIGNEE or self.status == Status.HUMAN_HANDLING


class Message(BaseModel):
    """Durable message record. Never mutated once stored."""

    id: int
    conversation_id: UUID
    sender: Sender
    body: str
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationChanges(BaseModel):
    """Partial update applied to a conversation in one commit. ``None`` means unchanged.

    Status is not part of it: status only moves through a state machine event.
    """

    assigned_to: Optional[str] = None
    requires_human: Optional[bool] = None
    sentiment: Optional[Sentiment] = None
    lead: Optional[LeadContact] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class NewMessage(BaseModel):
    """Validated message content awaiting a durable id."""

    sender: Sender
    body: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CommitResult(BaseModel):
    """Outcome of a repository commit."""

    conversation: Conversation
    message: Optional[Message] = None
    previous_status: Optional[Status] = None
    applied: bool = True
    rejection: Optional[str] = None

    @property
    def status_changed(self) -> bool:
        return self.applied and self.previous_status != self.conversation.status


class ConversationSummary(BaseModel):
    """Admin list row."""

    conversation: Conversation
    message_count: int = 0
    last_message: Optional[str] = None
    last_sender: Optional[Sender] = None


class ChatStats(BaseModel):
    """Dashboard counters."""

    active_count: int = 0
    needs_attention_count: int = 0
    resolved_today: int = 0
    new_today: int = 0
    ai_handling_count: int = 0
    human_handling_count: int = 0


class SentimentAnalysis(BaseModel):
    sentiment: Sentiment
    explicit_human_request: bool = False

    @property
    def requires_human(self) -> bool:
        return self.sentiment != Sentiment.NEUTRAL


class Verdict(BaseModel):
    """Escalation decision for one customer turn. Not persisted."""

    requires_human: bool
    sentiment: Sentiment
    reasons: List[EscalationReason] = Field(default_factory=list)


class CompletionResult(BaseModel):
    """Reply returned by the completion engine."""

    text: str
    flagged_for_human: bool = False
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    failed: bool = False
