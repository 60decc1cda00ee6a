from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

REQUEST_ID_KEY = "correlation_id"

# Values under these keys never reach the log sink
_SECRET_KEYS = ("password", "secret", "token", "authorization")
# Contact details (exact key match) are kept recognisable but not complete
_CONTACT_KEYS = ("email", "phone", "address")

_TRUTHY = {"1", "true", "yes", "on"}


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Attach a request id to every log line emitted in the current context.

    Reuses the caller's id when one is supplied so traces can be joined
    across services; otherwise a fresh uuid4 is generated.
    """
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: rid})
    return rid


def current_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get(REQUEST_ID_KEY)


def _mask(value: str) -> str:
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain}"
    return value[:2] + "***" if len(value) > 4 else "***"


def _scrub(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key in ("event", REQUEST_ID_KEY) or not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif lowered in _CONTACT_KEYS:
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Runs once on import from ``LOG_*`` environment variables and again from
    the app with the loaded settings, so ``.env`` values take effect too.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_auth_failure(
    reason: str,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    path: Optional[str] = None,
    logger: Optional[Any] = None,
    **fields: Any,
) -> None:
    """Record an authentication failure with its internal reason.

    Clients only ever see a generic message; the reason lives in the logs.
    """
    log = logger or get_logger("auth")
    log.warning(
        "authentication_failed",
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        path=path,
        **fields,
    )
