"""Backtesting-specific exceptions.

Fatal errors (InvalidRangeError, InsufficientDataError, DataFetchError)
abort a run. DecisionError and SizingError are recovered inside the loop
and only surface in logs. PersistenceFailedError carries the computed
result so callers do not lose it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from chartbot.common.exceptions import ChartbotBaseException, FetchError

if TYPE_CHECKING:
    from chartbot.backtesting.schemas import BacktestResult


class BacktestError(ChartbotBaseException):
    """General backtesting error (bad config, engine failure, etc.)."""


class InvalidRangeError(BacktestError):
    """The requested start date is after the end date."""


class InsufficientDataError(BacktestError):
    """Not enough historical bars to cover the warm-up window."""


class DecisionError(BacktestError):
    """The decision oracle failed or returned an unusable decision for one bar."""


class SizingError(BacktestError):
    """A position size could not be computed (zero risk per unit, bad inputs)."""


class PersistenceFailedError(BacktestError):
    """The backtest finished but its result could not be stored.

    Args:
        message: Human-readable error description.
        result: The fully computed BacktestResult.
        context: Optional dict of structured data for logging/debugging.
    """

    def __init__(
        self,
        message: str,
        result: BacktestResult,
        context: dict | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.result = result


class DataFetchError(FetchError):
    """The historical-data provider could not deliver bars."""
