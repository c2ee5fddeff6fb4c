"""
Structured logging configuration for the update server.

Provides JSON-formatted structured logging with:
- Security filtering (no key material, no raw client addresses)
- Low-cardinality fields (normalized paths, no query strings)

Usage:
    from forgeupdate.logging_config import setup_logging, get_logger

    setup_logging()  # Call once at startup
    logger = get_logger(__name__)
    logger.info("message", extra={"key": "value"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

# Matches URLs with query strings: https://example.com/path?query=value
_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")
# Sensitive patterns that might appear in free text
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Private key assignments (signing tooling)
    (re.compile(r"\b(private[_-]?key|signing[_-]?key)[=:]\s*['\"]?[\w\-+/=]+['\"]?", re.I), "[KEY]"),
    # Bearer tokens
    (re.compile(r"\b(bearer|token)[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[TOKEN]"),
    # Authorization headers
    (re.compile(r"(authorization|auth)[=:\s]+['\"]?[\w\-\.\s]+['\"]?", re.I), "[AUTH]"),
    # IP addresses (v4)
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
    # Email addresses
    (re.compile(r"\b[\w\.-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
]

# Fields that should NEVER appear in logs
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        # Credentials
        "secret",
        "token",
        "password",
        "auth",
        "authorization",
        "bearer",
        "credential",
        "private_key",
        "signing_key",
        "salt",
        # Client identity
        "ip",
        "ip_address",
        "remote",
        "peername",
        "forwarded",
        "x-forwarded-for",
        "user_agent",
        "email",
        "cookie",
    }
)

# Fields that are high-cardinality and should be normalized
HIGH_CARDINALITY_FIELDS: dict[str, str] = {
    "url": "endpoint",  # Extract path only
    "body": "[BODY]",  # Redact entirely
    "payload": "[PAYLOAD]",  # Redact entirely
    "query": "[QUERY]",  # Client-controlled
    "headers": "[HEADERS]",  # May carry cookies/auth
}

_RESERVED_RECORD_KEYS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _normalize_url(url: str) -> str:
    """Extract normalized endpoint path from URL."""
    parts = urlsplit(url)
    return parts.path or "/"


def _sanitize_url_in_text(match: re.Match[str]) -> str:
    """Replace URL with normalized path only."""
    path = _normalize_url(match.group(1))
    return path if path != "/" else "[URL]"


def _sanitize_text(text: str) -> str:
    """Sanitize free-form text (msg, exc) to remove sensitive data.

    Removes/normalizes:
    - URLs with query strings → path only
    - Key material, tokens, auth headers → placeholders
    - IP addresses → [IP]
    - Email addresses → [EMAIL]
    """
    if not text:
        return text

    result = _URL_PATTERN.sub(_sanitize_url_in_text, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _filter_log_record(record: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Filter sensitive and high-cardinality fields from log record.

    Recursively filters nested dicts up to depth 3.
    """
    if _depth > 3:
        return {"_truncated": "max depth exceeded"}

    filtered: dict[str, Any] = {}

    for key, value in record.items():
        key_lower = key.lower()

        # Exact or partial match on blocked names
        if key_lower in BLOCKED_FIELDS:
            continue
        if any(blocked in key_lower for blocked in BLOCKED_FIELDS):
            continue

        if key_lower in HIGH_CARDINALITY_FIELDS:
            if key_lower == "url" and isinstance(value, str):
                filtered["endpoint"] = _normalize_url(value)
            else:
                filtered[key] = HIGH_CARDINALITY_FIELDS[key_lower]
            continue

        if isinstance(value, (int, float, bool, type(None))):
            filtered[key] = value
        elif isinstance(value, str):
            filtered[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple)):
            # Cap list size to prevent huge log lines
            if len(value) <= 10:
                filtered[key] = list(value)
            else:
                filtered[key] = f"[list:{len(value)} items]"
        elif isinstance(value, dict):
            filtered[key] = _filter_log_record(value, _depth=_depth + 1)
        else:
            filtered[key] = _sanitize_text(str(value))

    return filtered


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_KEYS}


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Output format:
    {"ts":"2024-01-01T00:00:00.000+00:00","level":"INFO","logger":"module","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_dict: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }

        # Location for warnings and errors
        if record.levelno >= logging.WARNING:
            log_dict["file"] = record.filename
            log_dict["line"] = record.lineno

        if record.exc_info:
            exc_text = self.formatException(record.exc_info)
            log_dict["exc"] = _sanitize_text(exc_text)

        extra = _extra_fields(record)
        if extra:
            log_dict.update(_filter_log_record(extra))

        return json.dumps(log_dict, default=str, ensure_ascii=False)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for development with filtered fields."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string."""
        base = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"

        extra = _extra_fields(record)
        if extra:
            filtered = _filter_log_record(extra)
            if filtered:
                extra_str = " ".join(f"{k}={v}" for k, v in filtered.items())
                base = f"{base} | {extra_str}"

        if record.exc_info:
            base = f"{base}\n{_sanitize_text(self.formatException(record.exc_info))}"

        return base


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Configure structured logging for the application.

    Call once at startup.

    Args:
        level: Log level (default INFO).
        json_format: Use JSON formatter (default True for production).
        stream: Output stream (default stderr).
    """
    if stream is None:
        stream = sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)
