"""Error taxonomy shared by services and the HTTP layer."""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for errors surfaced to callers."""

    status_code = 500
    code = "chat_error"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(ChatError):
    """Bad input. No state was changed."""

    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class RateLimitExceeded(ChatError):
    """Too many messages for one session token."""

    status_code = 429
    code = "rate_limited"
    default_message = "Too many messages. Please wait a moment."

    def __init__(self, retry_after_seconds: int, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class Unauthorized(ChatError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"


class ConversationNotFound(ChatError):
    status_code = 404
    code = "not_found"
    default_message = "Conversation not found"


class ConversationResolved(ChatError):
    """Write attempted on a terminal conversation."""

    status_code = 409
    code = "conversation_resolved"
    default_message = "This conversation has been closed. Please start a new chat."


class InvalidTransition(ChatError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Action not allowed in the current conversation state"


class StoreUnavailable(ChatError):
    """Persistence is unreachable. Customer requests fall back to degraded mode."""

    status_code = 503
    code = "store_unavailable"
    default_message = "Chat storage is temporarily unavailable"


class CompletionEngineFailure(ChatError):
    """The completion engine errored or timed out."""

    status_code = 502
    code = "completion_failure"
    default_message = "Assistant is unavailable"


class RealtimeNotConfigured(ChatError):
    """Private channel authorization needs Pusher credentials."""

    status_code = 503
    code = "realtime_not_configured"
    default_message = "Real-time channels are not configured"
