from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO

import structlog

# Correlation ID for per-request / per-tool-call tracing
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_PII_KEYS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "email", "cookie"}
)


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact identities and credentials from log entries."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in _PII_KEYS):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """JSON lines by default; the console renderer for local development."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=stream is None),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(stream: Optional[TextIO] = None) -> None:
    """(Re)apply logging configuration from the environment.

    The stdio MCP server passes ``sys.stderr`` here: stdout carries the
    JSON-RPC stream and must never see a log line.
    """
    _configure_structlog(
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        json_output=_env_flag("LOG_JSON", "true"),
        development_mode=_env_flag("LOG_DEV_MODE", "false"),
        stream=stream,
    )


# Initialize logging on module import
configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# What can leak into a portal or storage error: local state paths, cookie
# headers, credentials in query strings or assignments, store URLs with a
# password, and traceback fragments.
_SENSITIVE_ERROR_PATTERNS = [
    (re.compile(r"(?i)\b(set-cookie|cookie)\s*:\s*[^\r\n]+"), r"\1: [redacted]"),
    (re.compile(r"(?i)\b(password|token|api[_-]?key|master[_ ]key)\s*[:=]\s*\S+"), r"\1=[redacted]"),
    (re.compile(r"(?i)\b(rediss?://[^:/\s@]*:)[^@\s]+@"), r"\1[redacted]@"),
    (re.compile(r"(https?://[^\s?#]+)\?\S+"), r"\1?[redacted]"),
    (re.compile(r"(?<![\w/:.])(?:~|/(?:home|root|tmp|var|Users))/\S+"), "[path]"),
    (re.compile(r'(?is)traceback \(most recent call last\).*'), "[traceback]"),
    (re.compile(r'File "[^"]+", line \d+'), "[traceback]"),
]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str) -> str:
    """Scrub a message before it crosses the tool boundary; capped in length."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern, replacement in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result


__all__ = [
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "sanitize_error_message",
    "set_correlation_id",
]
