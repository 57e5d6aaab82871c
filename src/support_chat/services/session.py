"""Session token issuing and client-side liveness."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

TOKEN_PREFIX = "chat_"
DEFAULT_TTL = timedelta(hours=2)


class SessionIdentityStore:
    """Issues opaque session tokens and answers whether a token is still fresh.

    Liveness is a pure function of the client-held issue time. Whether a
    conversation still accepts messages is decided by the store.
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL) -> None:
        self.ttl = ttl

    def issue(self) -> str:
        return f"{TOKEN_PREFIX}{secrets.token_urlsafe(24)}"

    def is_live(self, token: str, issued_at: datetime, now: Optional[datetime] = None) -> bool:
        if not token:
            return False
        now = now or datetime.now(timezone.utc)
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return now - issued_at < self.ttl
