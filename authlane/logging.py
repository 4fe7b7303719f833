"""Structured logging for AuthLane.

structlog is configured once, at import, from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Every event carries the correlation id of the request that
produced it, and values that look like credentials are masked before they
are rendered.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_REQUEST_ID_PATTERN = re.compile(r"[A-Za-z0-9._:\-]{1,128}")

_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "authlane_correlation_id", default=None
)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(candidate: Optional[str] = None) -> str:
    """Adopt a well-formed client request id, or mint a new one."""
    if candidate and _REQUEST_ID_PATTERN.fullmatch(candidate):
        cid = candidate
    else:
        cid = uuid.uuid4().hex
    _correlation_id.set(cid)
    return cid


def _bind_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = _correlation_id.get()
    if cid is not None:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


_SENSITIVE_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "email",
    "digest",
)
# Compact JWS: base64url JSON header always starts with "eyJ"
_COMPACT_TOKEN = re.compile(r"eyJ[\w-]*\.[\w-]+\.[\w-]+")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or key == "event":
            continue
        if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS):
            event_dict[key] = _mask(value)
        elif "eyJ" in value:
            event_dict[key] = _COMPACT_TOKEN.sub("[token]", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the AuthLane processor chain.

    JSON lines are rendered unless ``development_mode`` is set or
    ``json_output`` is off, in which case the console renderer is used.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output and not development_mode:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))

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
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    return structlog.get_logger(name)


GENERIC_CLIENT_MESSAGE = "An error occurred"
MAX_CLIENT_MESSAGE_LENGTH = 500

# Store and driver detail that must never reach a client; URLs go first so
# their credentials are gone before the narrower patterns run
_LEAKY_FRAGMENTS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(?:postgres(?:ql)?|rediss?)://\S+",
        r"\b(?:select|insert|update|delete)\b.{0,80}",
        r"\b(?:from|where|join)\s+\S+",
        r"\bconnection\b.*?\b(?:failed|refused|timed out|timeout)\b",
        r"(?:password|secret|token|key|credential)\s*[:=]\s*\S+",
        r"database\s+error",
        r"traceback \(most recent call last\).*",
        r"/(?:home|var|etc|usr|opt|tmp|root)/\S+",
    )
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` with connection strings, SQL, paths and secrets removed.

    Empty or non-string input yields a generic message; the result is capped
    at 500 characters.
    """
    if not error or not isinstance(error, str):
        return GENERIC_CLIENT_MESSAGE

    cleaned = error
    for fragment in _LEAKY_FRAGMENTS:
        cleaned = fragment.sub(replacement, cleaned)

    if len(cleaned) > MAX_CLIENT_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_CLIENT_MESSAGE_LENGTH - 3] + "..."
    return cleaned
