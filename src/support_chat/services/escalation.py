"""Escalation decisions for customer turns.

Sentiment is classified by keyword with a fixed priority: an explicit request
for a human beats urgency, which beats negative wording. Independently of the
sentiment, the assistant's own flag, a low confidence score, a long
conversation or a failed completion each force ``requires_human``. All
reasons are kept so administrators see every one of them.
"""

import re
from typing import Iterable, List, Pattern

from ..domain.models import EscalationReason, Sentiment, SentimentAnalysis, Verdict

HUMAN_REQUEST_KEYWORDS = (
    "speak to", "talk to", "real person", "human", "someone",
    "representative", "manager", "agent", "call me", "phone",
)
URGENT_KEYWORDS = (
    "urgent", "asap", "emergency", "immediately", "today",
    "right now", "deadline", "rush",
)
NEGATIVE_KEYWORDS = (
    "frustrated", "angry", "upset", "annoyed", "disappointed",
    "terrible", "awful", "horrible", "worst", "hate",
    "problem", "issue", "complaint", "wrong", "broken",
    "refund", "return", "cancel", "never", "waste",
)

CONFIDENCE_THRESHOLD = 0.6
LONG_CONVERSATION = 15


def _compile(keywords: Iterable[str]) -> Pattern[str]:
    alternatives = "|".join(re.escape(k) for k in keywords)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_HUMAN_REQUEST = _compile(HUMAN_REQUEST_KEYWORDS)
_URGENT = _compile(URGENT_KEYWORDS)
_NEGATIVE = _compile(NEGATIVE_KEYWORDS)

_SENTIMENT_REASONS = {
    Sentiment.NEEDS_HUMAN: EscalationReason.EXPLICIT_HUMAN_REQUEST,
    Sentiment.URGENT: EscalationReason.URGENT,
    Sentiment.NEGATIVE: EscalationReason.NEGATIVE_SENTIMENT,
}


def analyze_sentiment(text: str) -> SentimentAnalysis:
    """Classify a customer message."""
    if _HUMAN_REQUEST.search(text):
        return SentimentAnalysis(sentiment=Sentiment.NEEDS_HUMAN, explicit_human_request=True)
    if _URGENT.search(text):
        return SentimentAnalysis(sentiment=Sentiment.URGENT)
    if _NEGATIVE.search(text):
        return SentimentAnalysis(sentiment=Sentiment.NEGATIVE)
    return SentimentAnalysis(sentiment=Sentiment.NEUTRAL)


def decide(
    sentiment: Sentiment,
    explicit_human_request: bool,
    confidence: float,
    message_count: int,
    flagged_for_human: bool = False,
    completion_failed: bool = False,
    confidence_threshold: float = CONFIDENCE_THRESHOLD,
    long_conversation: int = LONG_CONVERSATION,
) -> Verdict:
    """Combine every escalation signal into a :class:`Verdict`."""
    reasons: List[EscalationReason] = []
    if explicit_human_request:
        reasons.append(EscalationReason.EXPLICIT_HUMAN_REQUEST)
    sentiment_reason = _SENTIMENT_REASONS.get(sentiment)
    if sentiment_reason is not None and sentiment_reason not in reasons:
        reasons.append(sentiment_reason)
    if flagged_for_human:
        reasons.append(EscalationReason.ASSISTANT_FLAGGED)
    if confidence < confidence_threshold:
        reasons.append(EscalationReason.LOW_CONFIDENCE)
    if message_count > long_conversation:
        reasons.append(EscalationReason.LONG_CONVERSATION)
    if completion_failed:
        reasons.append(EscalationReason.COMPLETION_FAILURE)

    return Verdict(requires_human=bool(reasons), sentiment=sentiment, reasons=reasons)
