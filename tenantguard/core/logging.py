"""
structlog setup for the API process and the arq worker.

Every line carries the request id and the acting user when there is one, so
a login, a refresh or an impersonation session can be followed across the
route, the credential store and the audit dispatcher. Credential material is
never written out: token and password fields are masked before rendering.
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor

from tenantguard.config import settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)

SENSITIVE_KEYS = frozenset({"password", "access_token", "refresh_token", "token", "authorization"})
REDACTED = "[redacted]"


def add_context_info(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_ctx.get(None)
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_ctx.get(None)
    if user_id:
        event_dict.setdefault("user_id", user_id)

    return event_dict


def redact_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask raw credentials that were passed as log fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging() -> None:
    """Console output in development, one JSON object per line elsewhere."""
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_info,
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    renderer: list[Processor]
    if settings.ENVIRONMENT == "development":
        renderer = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(logging.NOTSET),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.LOG_LEVEL.upper()),
    )

    if settings.ENVIRONMENT != "development":
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # Statement echo would print token hashes
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


def set_request_context(request_id: str, user_id: str | None = None) -> None:
    request_id_ctx.set(request_id)
    if user_id:
        user_id_ctx.set(user_id)


def get_request_id() -> str | None:
    """Request id of the current request; audit entries are stamped with it."""
    return request_id_ctx.get(None)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    user_id_ctx.set(None)


def bind_context(**kwargs: Any) -> None:
    """Attach fields to every following log line of this job or request."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
