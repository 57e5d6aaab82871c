"""Who may subscribe to which private real-time channel."""

import hmac
import re
from typing import Dict, Optional

import structlog

from ..domain.errors import (
    ConversationNotFound,
    RealtimeNotConfigured,
    Unauthorized,
    ValidationError,
)
from ..realtime.fanout import ADMIN_CHANNEL, CHAT_CHANNEL_PREFIX
from ..realtime.pusher import ChannelSigner
from ..repositories.base import Repository
from .admin import AdminController

logger = structlog.get_logger()

SOCKET_ID_PATTERN = re.compile(r"^\d+\.\d+$")


class ChannelAccess:
    """Signs a subscription only for the session holder or an administrator.

    A conversation channel is granted to whoever presents its session token;
    the admin channel requires the admin secret.
    """

    def __init__(
        self,
        repository: Repository,
        admin: AdminController,
        signer: Optional[ChannelSigner] = None,
    ) -> None:
        self.repository = repository
        self.admin = admin
        self.signer = signer

    async def authorize(
        self,
        socket_id: str,
        channel_name: str,
        session_token: Optional[str] = None,
        admin_secret: Optional[str] = None,
    ) -> Dict[str, str]:
        if self.signer is None:
            raise RealtimeNotConfigured()
        if not SOCKET_ID_PATTERN.match(socket_id or ""):
            raise ValidationError("Invalid socket_id")

        if channel_name == ADMIN_CHANNEL:
            self.admin.authorize(admin_secret)
        elif channel_name.startswith(CHAT_CHANNEL_PREFIX):
            channel_token = channel_name[len(CHAT_CHANNEL_PREFIX):]
            if not session_token or not hmac.compare_digest(
                channel_token.encode("utf-8"), session_token.encode("utf-8")
            ):
                logger.warning("channel_auth_denied", channel=channel_name)
                raise Unauthorized("Not allowed to join this channel")
            if await self.repository.get_conversation_by_token(session_token) is None:
                raise ConversationNotFound()
        else:
            logger.warning("channel_auth_denied", channel=channel_name)
            raise Unauthorized("Unauthorized channel")

        logger.info("channel_authorized", channel=channel_name)
        return self.signer.authorize(socket_id, channel_name)
