from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id propagated from the X-Request-ID header, or generated
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_auth_context(account_id: str, session_id: Optional[str] = None) -> None:
    """Attach the authenticated identity to every later log line of the request."""
    structlog.contextvars.bind_contextvars(account_id=account_id, session_id=session_id)


def clear_auth_context() -> None:
    structlog.contextvars.unbind_contextvars("account_id", "session_id")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_SENSITIVE_KEYS = ("password", "secret", "token", "authorization", "email", "mfa_code", "otpauth")

# header.payload.signature in base64url; a bearer or refresh token in any field
_COMPACT_TOKEN = re.compile(r"[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}")


def _mask(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and contact fields, and any stray compact token."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _SENSITIVE_KEYS):
            event_dict[key] = _mask(value)
        elif _COMPACT_TOKEN.search(value):
            event_dict[key] = _COMPACT_TOKEN.sub("[token]", value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; coloured console output when
    ``development_mode`` is set or ``json_output`` is off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach an API response body
_LEAKY_FRAGMENTS = [
    re.compile(p)
    for p in (
        r"(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}",
        r"(?i)database\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, filesystem paths, inline credentials and tracebacks."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = _COMPACT_TOKEN.sub("[token]", error)
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
