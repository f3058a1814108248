import logging
from contextvars import ContextVar
from uuid import uuid4

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from structlog.contextvars import clear_contextvars

correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

CORRELATION_ID_HEADER = "X-Correlation-ID"
INCOMING_ID_HEADERS = ("x-correlation-id", "x-trace-id", "x-request-id")
QUIET_PATH_PREFIXES = ("/health", "/api/v1/cache/")

logger = structlog.get_logger(__name__)


def get_correlation_id() -> str:
    """Returns the current correlation ID, or 'unknown' outside a request."""
    return correlation_id_ctx.get() or "unknown"


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_ctx.set(correlation_id)


def resolve_correlation_id(request: Request) -> tuple[str, bool]:
    """Returns the caller's trace id, or a fresh one and False when none was sent."""
    for header in INCOMING_ID_HEADERS:
        value = str(request.headers.get(header) or "").strip()
        if value:
            return value, True
    return str(uuid4()), False


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Scopes a correlation id to each request and echoes it back on the response.
    Turn identifiers bound by the previous request on this context are dropped.
    """

    async def dispatch(self, request: Request, call_next):
        clear_contextvars()
        correlation_id, propagated = resolve_correlation_id(request)
        if not propagated:
            quiet = request.url.path.startswith(QUIET_PATH_PREFIXES)
            (logger.debug if quiet else logger.info)(
                "trace_id_generated", new_trace_id=correlation_id, path=request.url.path
            )

        token = correlation_id_ctx.set(correlation_id)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            correlation_id_ctx.reset(token)


class CorrelationLogFilter(logging.Filter):
    """Adds `correlation_id` to stdlib log records for the handler format string."""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        return True
