"""Completion engine contract and the Gemini-backed implementation."""

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..domain.errors import CompletionEngineFailure
from ..domain.models import CompletionResult, Message, Sender
from ..observability import COMPLETION_FAILURES

logger = structlog.get_logger()

Turn = Tuple[Sender, str]

NEEDS_HUMAN_MARKER = "[NEEDS_HUMAN]"

FALLBACK_MESSAGE = (
    "I'm having trouble connecting right now. Please use the contact page or "
    "call the store directly and our team will help you right away!"
)

SYSTEM_PROMPT = f"""You are the customer support assistant for an online store.
Be friendly and concise (2-4 sentences). Do not invent product details, prices or
policies you are unsure about; offer to have a team member follow up instead.

Add "{NEEDS_HUMAN_MARKER}" at the END of your response if the customer asks for a
person, is frustrated, needs a custom quote, has an order problem, or you cannot help."""

UNCERTAIN_PHRASES = (
    "i'm not sure", "i don't know", "you should ask", "contact the store",
    "speak to a team member", "i can't", "unable to",
)

SUGGESTED_QUESTIONS = (
    "What's this week's deal?",
    "Do you offer local pickup or delivery?",
    "Are all sales final? What about defects?",
    "Do you have samples for this product?",
    "Can you recommend an installer?",
    "What payment methods do you accept?",
    "What are your store hours?",
)


class CompletionEngine(Protocol):
    """Anything that turns a transcript into a reply."""

    async def complete(self, history: Sequence[Turn], context: str) -> CompletionResult:
        ...


def transcript_from(messages: Sequence[Message]) -> List[Turn]:
    return [(m.sender, m.body) for m in messages]


def estimate_confidence(reply: str, message_count: int) -> float:
    """Keyword heuristic on the reply text. Not a calibrated probability."""
    confidence = 0.8
    lowered = reply.lower()
    for phrase in UNCERTAIN_PHRASES:
        if phrase in lowered:
            confidence -= 0.15
    if message_count > 10:
        confidence -= 0.1
    return max(0.1, min(1.0, confidence))


def build_context(context: Optional[Dict[str, Any]]) -> str:
    """Render page/product/cart context as prompt text."""
    if not context:
        return ""
    lines = []
    if context.get("page_url"):
        lines.append(f"Customer is currently viewing: {context['page_url']}")
    if context.get("product_viewed"):
        lines.append(f"Customer is looking at product: {context['product_viewed']}")
    cart = context.get("cart_contents") or {}
    items = cart.values() if isinstance(cart, dict) else cart
    cart_lines = [
        f"- {item.get('name', 'item')}: {item.get('quantity', 1)}"
        for item in items
        if isinstance(item, dict)
    ]
    if cart_lines:
        lines.append("Customer has items in their cart:")
        lines.extend(cart_lines)
    return "\n".join(lines)


def suggested_questions() -> List[str]:
    return list(SUGGESTED_QUESTIONS)


def parse_reply(raw: str, message_count: int) -> CompletionResult:
    flagged = NEEDS_HUMAN_MARKER in raw
    text = raw.replace(NEEDS_HUMAN_MARKER, "").strip()
    return CompletionResult(
        text=text,
        flagged_for_human=flagged,
        confidence=estimate_confidence(text, message_count),
    )


class GeminiCompletionEngine:
    """Completion engine using Google's Gemini models."""

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-1.5-flash",
        max_output_tokens: int = 500,
        temperature: float = 0.7,
    ) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self.generation_config = {
            "max_output_tokens": max_output_tokens,
            "temperature": temperature,
        }
        self._configured = False
        logger.info("llm_service_init", model=model_name, has_api_key=bool(api_key))

    def _model(self, context: str) -> "genai.GenerativeModel":
        if not self.api_key:
            raise CompletionEngineFailure("Completion engine is not configured")
        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True
        instruction = SYSTEM_PROMPT
        if context:
            instruction = f"{SYSTEM_PROMPT}\n\n## Current Context:\n{context}"
        return genai.GenerativeModel(self.model_name, system_instruction=instruction)

    @staticmethod
    def _contents(history: Sequence[Turn]) -> List[Dict[str, Any]]:
        """Role-labelled transcript; consecutive turns of one role are merged."""
        contents: List[Dict[str, Any]] = []
        for sender, body in history:
            role = "user" if sender == Sender.CUSTOMER else "model"
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].append(body)
            else:
                contents.append({"role": role, "parts": [body]})
        return contents

    async def complete(self, history: Sequence[Turn], context: str) -> CompletionResult:
        model = self._model(context)
        try:
            response = await model.generate_content_async(
                self._contents(history),
                generation_config=self.generation_config,
            )
            raw = response.text
        except exceptions.GoogleAPIError as e:
            logger.error("completion_api_error", error=str(e))
            raise CompletionEngineFailure(str(e)) from e
        except ValueError as e:
            # Raised by ``response.text`` when the candidate was blocked.
            logger.warning("completion_blocked", error=str(e))
            raise CompletionEngineFailure("Completion returned no text") from e
        return parse_reply(raw, len(history))


def fallback_result() -> CompletionResult:
    return CompletionResult(
        text=FALLBACK_MESSAGE, flagged_for_human=True, confidence=0.0, failed=True
    )


async def complete_with_fallback(
    engine: CompletionEngine,
    history: Sequence[Turn],
    context: str,
    timeout: float,
) -> CompletionResult:
    """Call ``engine`` with a timeout, returning the apology reply on any failure."""
    try:
        return await asyncio.wait_for(engine.complete(history, context), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("completion_timeout", timeout=timeout)
    except CompletionEngineFailure as e:
        logger.error("completion_failed", error=e.message)
    except Exception as e:
        logger.error("completion_unexpected_error", error=str(e))
    COMPLETION_FAILURES.inc()
    return fallback_result()
