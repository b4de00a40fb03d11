"""Custom exceptions for Chartbot.

All modules should raise these exceptions instead of generic ones.
Callers catch ChartbotBaseException to get a message plus structured
context for logging.
"""

from __future__ import annotations

from chartbot.common.logging import SECRET_KEY_WORDS


class ChartbotBaseException(Exception):
    """Base exception for all Chartbot errors.

    Args:
        message: Human-readable error description.
        context: Optional dict of structured data for logging/debugging.
    """

    def __init__(self, message: str, context: dict | None = None) -> None:
        super().__init__(message)
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            # Filter out anything that looks like a secret
            safe_context = {
                k: "[REDACTED]" if _is_secret_key(k) else v for k, v in self.context.items()
            }
            return f"{super().__str__()} | context={safe_context}"
        return super().__str__()


class FetchError(ChartbotBaseException):
    """Failed to fetch data from an external API (market data, oracle backends)."""


class ParseError(ChartbotBaseException):
    """Failed to parse response data from an external API."""


def _is_secret_key(key: str) -> bool:
    """Check if a dict key name suggests it holds an Alpaca credential or similar."""
    key_lower = key.lower()
    return any(word in key_lower for word in SECRET_KEY_WORDS)
