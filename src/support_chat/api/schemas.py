"""Request and response bodies for the HTTP API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StartSessionRequest(BaseModel):
    session_token: Optional[str] = Field(default=None, max_length=128)
    context: Dict[str, Any] = Field(default_factory=dict)


class SendMessageRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    message: Optional[str] = None
    context: Optional[Dict[str, Any]] = None


class LeadRequest(BaseModel):
    session_token: str = Field(min_length=1, max_length=128)
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class LeadResponse(BaseModel):
    success: bool = True
    message: str = "Thanks! A member of our team will be in touch."


class ChannelAuthRequest(BaseModel):
    socket_id: str = Field(min_length=1, max_length=64)
    channel_name: str = Field(min_length=1, max_length=200)
    session_token: Optional[str] = Field(default=None, max_length=128)


class ChannelAuthResponse(BaseModel):
    auth: str


class AdminActionRequest(BaseModel):
    action: str
    message: Optional[str] = None


class CloseStaleResponse(BaseModel):
    success: bool = True
    closed: List[str]
    count: int


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
