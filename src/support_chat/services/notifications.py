"""Out-of-band notifications for the support team.

Every send is fire-and-forget: it runs as a background task and a failure is
logged, never propagated into the request that triggered it.
"""

import asyncio
from email.mime.text import MIMEText
from typing import Any, Coroutine, Iterable, Optional, Protocol, Set

import aiosmtplib
import structlog

from ..config import Settings
from ..domain.models import Conversation, EscalationReason

logger = structlog.get_logger()


class Notifier(Protocol):
    async def new_conversation(self, conversation: Conversation) -> None:
        ...

    async def needs_attention(
        self, conversation: Conversation, reasons: Iterable[EscalationReason]
    ) -> None:
        ...

    async def lead_captured(self, conversation: Conversation) -> None:
        ...


class EmailNotifier:
    """Sends plain-text emails over SMTP."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.smtp_username and s.smtp_password and s.notify_email)

    async def _send(self, subject: str, text: str) -> None:
        if not self.configured:
            logger.info("email_skipped", reason="smtp_not_configured", subject=subject)
            return
        s = self.settings
        message = MIMEText(text, "plain", "utf-8")
        message["Subject"] = subject
        message["From"] = s.smtp_from_email or s.smtp_username
        message["To"] = s.notify_email
        await aiosmtplib.send(
            message,
            hostname=s.smtp_host,
            port=s.smtp_port,
            username=s.smtp_username,
            password=s.smtp_password,
            start_tls=True,
        )
        logger.info("email_sent", subject=subject)

    async def new_conversation(self, conversation: Conversation) -> None:
        if not self.settings.email_new_conversation:
            return
        page = conversation.context.get("page_url") or "Unknown page"
        product = conversation.context.get("product_viewed")
        subject = f"New chat: viewing {product}" if product else "New chat started"
        lines = [
            "A customer just started a chat.",
            "",
            f"Page: {page}",
            f"Product: {product}" if product else None,
            f"Time: {conversation.created_at:%Y-%m-%d %H:%M} UTC",
            "",
            f"Dashboard: {self.settings.admin_dashboard_url}",
        ]
        await self._send(subject, "\n".join(line for line in lines if line is not None))

    async def needs_attention(
        self, conversation: Conversation, reasons: Iterable[EscalationReason]
    ) -> None:
        if not self.settings.email_needs_attention:
            return
        reason_text = ", ".join(r.value.replace("_", " ") for r in reasons)
        text = "\n".join(
            [
                "A chat needs your attention.",
                "",
                f"Reasons: {reason_text}",
                f"Session: {conversation.session_token}",
                "",
                f"Dashboard: {self.settings.admin_dashboard_url}",
            ]
        )
        await self._send("Chat needs attention", text)

    async def lead_captured(self, conversation: Conversation) -> None:
        if not self.settings.email_lead_capture or conversation.lead is None:
            return
        lead = conversation.lead
        text = "\n".join(
            [
                f"Name: {lead.name}",
                f"Email: {lead.email}",
                f"Phone: {lead.phone}",
                f"Session: {conversation.session_token}",
            ]
        )
        await self._send(f"New chat lead: {lead.name}", text)


class NotificationDispatcher:
    """Runs notifier calls in the background and keeps them from failing requests."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def _schedule(self, name: str, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(name, t))

    def _finished(self, name: str, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("notification_failed", notification=name, error=str(error))

    def new_conversation(self, conversation: Conversation) -> None:
        self._schedule("new_conversation", self.notifier.new_conversation(conversation))

    def needs_attention(
        self, conversation: Conversation, reasons: Iterable[EscalationReason]
    ) -> None:
        self._schedule(
            "needs_attention", self.notifier.needs_attention(conversation, list(reasons))
        )

    def lead_captured(self, conversation: Conversation) -> None:
        self._schedule("lead_captured", self.notifier.lead_captured(conversation))

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight notifications, e.g. on shutdown."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
