"""Publisher and channel authorizer for Pusher Channels."""

import asyncio
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from .broker import PublishError

logger = structlog.get_logger()


class ChannelSigner:
    """Signs private channel subscriptions for the Pusher client library."""

    def __init__(self, key: str, secret: str) -> None:
        self.key = key
        self.secret = secret

    def authorize(self, socket_id: str, channel_name: str) -> Dict[str, str]:
        to_sign = f"{socket_id}:{channel_name}"
        signature = hmac.new(
            self.secret.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return {"auth": f"{self.key}:{signature}"}


class PusherPublisher:
    """Triggers events through the Pusher REST API.

    Transport errors and 5xx/429 responses are retried, so a subscriber may
    see the same event more than once.
    """

    def __init__(
        self,
        app_id: str,
        key: str,
        secret: str,
        cluster: str,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        retry_delay: float = 0.2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app_id = app_id
        self.key = key
        self.secret = secret
        self.base_url = f"https://api-{cluster}.pusher.com"
        self.client = client or httpx.AsyncClient(timeout=5.0)
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.clock = clock

    @property
    def events_path(self) -> str:
        return f"/apps/{self.app_id}/events"

    def sign(self, path: str, body: bytes) -> Dict[str, str]:
        """Query parameters carrying the request signature."""
        params = {
            "auth_key": self.key,
            "auth_timestamp": str(int(self.clock())),
            "auth_version": "1.0",
            "body_md5": hashlib.md5(body).hexdigest(),
        }
        query = "&".join(f"{k}={params[k]}" for k in sorted(params))
        to_sign = "\n".join(["POST", path, query])
        params["auth_signature"] = hmac.new(
            self.secret.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return params

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        body = json.dumps(
            {"name": event, "channels": [channel], "data": json.dumps(payload, default=str)}
        ).encode("utf-8")

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.post(
                    self.base_url + self.events_path,
                    params=self.sign(self.events_path, body),
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
                return
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500 and status != 429:
                    raise PublishError(f"pusher rejected event ({status})") from e
                error = f"status {status}"
            except httpx.TransportError as e:
                error = str(e) or type(e).__name__

            logger.warning(
                "pusher_publish_retry",
                channel=channel,
                event=event,
                attempt=attempt,
                error=error,
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay * attempt)

        raise PublishError(f"pusher publish failed after {self.max_attempts} attempts")

    async def aclose(self) -> None:
        await self.client.aclose()
