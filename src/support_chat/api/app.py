"""
FastAPI Application Module

HTTP surface of the support chat engine. Customers start sessions and send
messages; operators list conversations and intervene behind a shared secret.

Key Features:
- Per-session rate limiting
- Degraded replies when the store is unreachable
- Structured logging and Prometheus metrics
- CORS and OpenTelemetry support
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from structlog import get_logger

from .. import __version__
from ..config import Settings, get_settings
from ..container import Services, build_services
from ..domain.errors import ChatError, RateLimitExceeded
from ..observability import CUSTOM_REGISTRY, ERRORS, REQUESTS, configure_logging
from ..services.admin import AdminController, ConversationList, InterventionResult
from ..services.chat import ChatReply, ChatService, ConversationDetail, SessionStart
from .schemas import (
    AdminActionRequest,
    ChannelAuthRequest,
    ChannelAuthResponse,
    CloseStaleResponse,
    HealthResponse,
    LeadRequest,
    LeadResponse,
    SendMessageRequest,
    StartSessionRequest,
)

logger = get_logger()


def get_services(request: Request) -> Services:
    """Returns the service graph attached to the app"""
    return request.app.state.services


def get_chat(services: Services = Depends(get_services)) -> ChatService:
    return services.chat


def require_admin(
    x_admin_secret: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> AdminController:
    """Rejects the request unless it carries the admin secret"""
    services.admin.authorize(x_admin_secret)
    return services.admin


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    ERRORS.labels(code=exc.code).inc()
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    ERRORS.labels(code="validation_error").inc()
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Invalid {field}" if field else "Invalid request"
    logger.warning("request_invalid", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"error": message, "code": "validation_error"})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the application. Tests pass their own ``services``."""
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        await services.rate_limiter.start()
        logger.info("application_startup_complete", environment=settings.environment)

        yield

        await services.rate_limiter.stop()
        await services.notifications.drain(timeout=5.0)
        aclose = getattr(services.publisher, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Support Chat API",
        description="Live customer-support conversations with AI replies and human takeover",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    FastAPIInstrumentor.instrument_app(app)

    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Counts and logs every request"""
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        route = request.scope.get("route")
        REQUESTS.labels(path=getattr(route, "path", "unmatched")).inc()
        logger.info("request_finished", path=request.url.path, status=response.status_code)
        return response

    @app.post("/chat/sessions", response_model=SessionStart)
    async def start_session(
        body: StartSessionRequest,
        user_agent: Optional[str] = Header(default=None),
        chat: ChatService = Depends(get_chat),
    ) -> SessionStart:
        """Resumes an open conversation or starts a new one"""
        return await chat.start_session(body.session_token, body.context, user_agent)

    @app.post("/chat/messages", response_model=ChatReply)
    async def send_message(
        body: SendMessageRequest, chat: ChatService = Depends(get_chat)
    ) -> ChatReply:
        """Stores a customer message and returns the reply, if any"""
        return await chat.handle_message(body.session_token, body.message, body.context)

    @app.get("/chat/sessions/{session_token}", response_model=ConversationDetail)
    async def get_history(
        session_token: str, chat: ChatService = Depends(get_chat)
    ) -> ConversationDetail:
        return await chat.get_history(session_token)

    @app.post("/chat/lead", response_model=LeadResponse)
    async def capture_lead(body: LeadRequest, chat: ChatService = Depends(get_chat)) -> LeadResponse:
        await chat.capture_lead(body.session_token, body.name, body.email, body.phone)
        return LeadResponse()

    @app.post("/chat/pusher-auth", response_model=ChannelAuthResponse)
    async def authorize_channel(
        body: ChannelAuthRequest,
        x_admin_secret: Optional[str] = Header(default=None),
        services: Services = Depends(get_services),
    ) -> ChannelAuthResponse:
        """Signs a private channel subscription for the session holder or an admin"""
        auth = await services.channels.authorize(
            body.socket_id, body.channel_name, body.session_token, x_admin_secret
        )
        return ChannelAuthResponse(**auth)

    @app.get("/admin/conversations", response_model=ConversationList)
    async def list_conversations(
        filter: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        admin: AdminController = Depends(require_admin),
    ) -> ConversationList:
        """Open conversations, those needing a human first, with dashboard stats"""
        return await admin.list_conversations(filter, limit=limit, offset=offset)

    @app.get("/admin/conversations/{session_token}", response_model=ConversationDetail)
    async def conversation_detail(
        session_token: str, admin: AdminController = Depends(require_admin)
    ) -> ConversationDetail:
        return await admin.conversation_detail(session_token)

    @app.post("/admin/conversations/{session_token}/actions", response_model=InterventionResult)
    async def intervene(
        session_token: str,
        body: AdminActionRequest,
        admin: AdminController = Depends(require_admin),
    ) -> InterventionResult:
        """Take over, reply, hand back or resolve"""
        return await admin.act(session_token, body.action, body.message)

    @app.post(
        "/admin/housekeeping/close-stale",
        response_model=CloseStaleResponse,
        dependencies=[Depends(require_admin)],
    )
    async def close_stale(services: Services = Depends(get_services)) -> CloseStaleResponse:
        closed = await services.housekeeper.close_stale()
        return CloseStaleResponse(closed=closed, count=len(closed))

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(version=__version__)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
