"""Logging configuration and Prometheus metrics."""

import logging

import structlog
from prometheus_client import CollectorRegistry, Counter

from .config import Settings

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter(
    "requests_total", "Total requests by path", ["path"], registry=CUSTOM_REGISTRY
)
ERRORS = Counter(
    "errors_total", "Total errors by error code", ["code"], registry=CUSTOM_REGISTRY
)
MESSAGES = Counter(
    "messages_persisted_total", "Messages persisted by sender", ["sender"], registry=CUSTOM_REGISTRY
)
ESCALATIONS = Counter(
    "escalations_total", "Escalation reasons reported", ["reason"], registry=CUSTOM_REGISTRY
)
DEGRADED_RESPONSES = Counter(
    "degraded_responses_total", "Replies served without persistence", registry=CUSTOM_REGISTRY
)
RATE_LIMITED = Counter(
    "rate_limited_total", "Customer messages rejected by the rate limiter", registry=CUSTOM_REGISTRY
)
COMPLETION_FAILURES = Counter(
    "completion_failures_total", "Completion engine timeouts and errors", registry=CUSTOM_REGISTRY
)
PUBLISH_FAILURES = Counter(
    "publish_failures_total", "Real-time events that could not be published", ["event"],
    registry=CUSTOM_REGISTRY,
)


def configure_logging(settings: Settings) -> None:
    """Install the structlog processor chain."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
