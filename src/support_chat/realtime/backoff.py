"""Reconnect policy for real-time subscribers."""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with proportional jitter."""

    initial: float = 0.5
    maximum: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_attempts: Optional[int] = None

    def delay(self, attempt: int) -> float:
        base = min(self.maximum, self.initial * self.multiplier ** attempt)
        return base + random.uniform(0, base * self.jitter)

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts


async def connect_with_backoff(
    connect: Callable[[], Awaitable[T]],
    policy: BackoffPolicy = BackoffPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``connect`` until it stops raising ``ConnectionError``."""
    attempts = 0
    while True:
        try:
            return await connect()
        except ConnectionError as e:
            attempts += 1
            if policy.exhausted(attempts):
                logger.error("reconnect_gave_up", attempts=attempts, error=str(e))
                raise
            delay = policy.delay(attempts - 1)
            logger.warning("reconnect_scheduled", attempt=attempts, delay=round(delay, 3), error=str(e))
            await sleep(delay)
