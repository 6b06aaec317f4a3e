from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# keys whose values are bearer secrets or password material
_SECRET_KEYS = ("password", "secret", "token", "authorization", "jwt")
_EMAIL_KEYS = ("email", "to")


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, generating one if absent."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def mask_email(address: str) -> str:
    """``someone@example.com`` -> ``so***@example.com``."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}***"


@contextmanager
def job_context(job: str, fire_at: datetime) -> Iterator[None]:
    """Attach the scheduled job name and fire time to every log line inside."""
    with structlog.contextvars.bound_contextvars(job=job, fire_at=fire_at.isoformat()):
        yield


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = request_id
    return event_dict


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential values and email addresses before rendering."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if lowered in _EMAIL_KEYS or lowered.endswith("_email"):
            if "***" not in value:
                event_dict[key] = mask_email(value)
        elif any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = _mask_secret(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``dev_mode`` (or ``json_output=False``) switches
    to the colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    dev_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
