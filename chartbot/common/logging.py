"""Structured logging for backtest runs and market-data fetches.

Lines are pipe-delimited so a run can be followed with grep: timestamp, level,
module tag, message, then the structured ``data`` dict as JSON. Backtest runs
log under BACKTEST, Alpaca bar fetches under MARKET and result persistence
under STORAGE.

Alpaca credentials travel as ``APCA-API-KEY-ID`` / ``APCA-API-SECRET-KEY``
headers (or an ``Authorization: Bearer`` header for OAuth apps). Any JSON field
whose name looks like one of these, and any bearer token quoted in a message
such as an httpx error, is replaced with [REDACTED] before the line is written.

Usage:
    from chartbot.common.logging import get_logger
    logger = get_logger("BACKTEST")
    logger.info("Position opened", extra={"data": {"symbol": "AAPL", "size": 200}})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import UTC, datetime

from chartbot.common.config import get_settings

# Module tags for structured logging
MODULE_TAGS = {
    "BACKTEST",
    "MARKET",
    "STORAGE",
    "DB",
    "SYSTEM",
    "TEST",
}

# Substrings that mark a field name as credential-bearing
SECRET_KEY_WORDS = ("apca", "key", "secret", "token", "authorization", "password", "credential")

_SECRET_WORDS_RE = "|".join(SECRET_KEY_WORDS)
_JSON_SECRET_FIELD = re.compile(rf'"([^"]*(?:{_SECRET_WORDS_RE})[^"]*)":\s*"[^"]*"', re.IGNORECASE)
# Single-quoted dict repr, used when the data extra is not JSON-encodable
_REPR_SECRET_FIELD = re.compile(rf"'([^']*(?:{_SECRET_WORDS_RE})[^']*)':\s*'[^']*'", re.IGNORECASE)
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def _redact_secrets(text: str) -> str:
    """Replace credential values in a log string with [REDACTED]."""
    text = _JSON_SECRET_FIELD.sub(r'"\1": "[REDACTED]"', text)
    text = _REPR_SECRET_FIELD.sub(r"'\1': '[REDACTED]'", text)
    return _BEARER_PATTERN.sub(r"\1[REDACTED]", text)


def _format_data(data: object) -> str:
    """Render the ``data`` extra as JSON, falling back to repr-style text."""
    try:
        rendered = json.dumps(data, default=str)
    except (TypeError, ValueError):
        # Circular structures and similar; still redact the text form
        rendered = str(data)
    return _redact_secrets(rendered)


class StructuredFormatter(logging.Formatter):
    """Formats log records as structured, human-readable lines.

    Output format:
        2025-03-03T14:30:00Z | INFO | BACKTEST | Position opened | {"symbol": "AAPL"}
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            record.levelname,
            getattr(record, "module_tag", "SYSTEM"),
            _redact_secrets(record.getMessage()),
        ]
        data = getattr(record, "data", None)
        if data is not None:
            parts.append(_format_data(data))

        line = " | ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ModuleTagLogger(logging.LoggerAdapter):
    """Logger adapter that injects module_tag and supports structured data.

    Usage:
        logger = get_logger("MARKET")
        logger.info("Fetched bars", extra={"data": {"symbol": "AAPL"}})
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        # Inject module_tag into the record
        extra = kwargs.get("extra", {})
        extra["module_tag"] = self.extra.get("module_tag", "SYSTEM")
        kwargs["extra"] = extra
        return msg, kwargs


def _configured_level() -> int:
    """Map Settings.log_level to a logging level (unknown names fall back to INFO)."""
    level = logging.getLevelName(get_settings().log_level.upper())
    return level if isinstance(level, int) else logging.INFO


# Cache loggers to avoid duplicate handlers
_loggers: dict[str, ModuleTagLogger] = {}


def get_logger(module_tag: str) -> ModuleTagLogger:
    """Get a structured logger with the given module tag.

    Args:
        module_tag: One of the MODULE_TAGS (BACKTEST, MARKET, STORAGE, etc.)

    Returns:
        A logger adapter that injects the module tag into every log line.
    """
    if module_tag in _loggers:
        return _loggers[module_tag]

    logger = logging.getLogger(f"chartbot.{module_tag.lower()}")

    # Only add handler if this logger doesn't have one yet
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_configured_level())
        logger.propagate = False

    adapter = ModuleTagLogger(logger, {"module_tag": module_tag})
    _loggers[module_tag] = adapter
    return adapter
