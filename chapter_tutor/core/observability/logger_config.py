import logging

import structlog
from structlog.contextvars import merge_contextvars

from chapter_tutor.core.observability.context_vars import get_chapter_id, get_session_id, get_user_id
from chapter_tutor.core.observability.correlation import CorrelationLogFilter, get_correlation_id
from chapter_tutor.core.settings import settings

SERVICE_NAME = "chapter-tutor"
TURN_FIELDS = ("user_id", "chapter_id", "session_id")


def add_context_vars(_, __, event_dict):
    """
    Moves the turn identifiers under `trace` and renames `event` to `message`.
    Identifiers passed explicitly to a log call win over the ambient ones.
    """
    event_dict["correlation_id"] = get_correlation_id()

    ambient = {"user_id": get_user_id(), "chapter_id": get_chapter_id(), "session_id": get_session_id()}
    for field in TURN_FIELDS:
        if field in event_dict:
            ambient[field] = event_dict.pop(field)
    existing = event_dict.get("trace")
    if isinstance(existing, dict):
        ambient.update(existing)
    event_dict["trace"] = {k: v for k, v in ambient.items() if v is not None}

    if "event" in event_dict:
        event_dict["message"] = event_dict.pop("event")
    return event_dict


def redact_binary(_, __, event_dict):
    """Audio payloads never reach the log stream; only their size does."""
    for key, value in list(event_dict.items()):
        if isinstance(value, (bytes, bytearray, memoryview)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def add_service_labels(_, __, event_dict):
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("env", settings.APP_ENV or settings.ENVIRONMENT or "local")
    return event_dict


def configure_structlog(level: str | None = None):
    """
    Emits structlog events as canonical JSON. Stdlib records (uvicorn, httpx) go
    through a plain handler tagged with the request's trace id.
    """
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationLogFilter())
    handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] [trace_id=%(correlation_id)s] %(name)s: %(message)s")
    )

    resolved_level = str(level or settings.LOG_LEVEL or "INFO").upper()
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, resolved_level, logging.INFO),
        handlers=[handler],
        force=True,
    )
    # Request logs from the HTTP client libraries would echo signed URLs and keys.
    for noisy in ("httpx", "httpcore", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, logging.getLogger().level))

    structlog.configure(
        processors=[
            merge_contextvars,
            add_context_vars,
            redact_binary,
            add_service_labels,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
