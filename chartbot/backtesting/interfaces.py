"""Collaborator protocols for the backtesting engine.

The engine never fetches data, decides trades, renders charts or writes to
storage itself. It talks to these protocols, so any implementation (HTTP
client, LLM-backed analyzer, test double) can be injected.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from chartbot.backtesting.schemas import (
    AnalysisRecord,
    BacktestResult,
    ClosedPosition,
    EquityPoint,
    OpenPosition,
)
from chartbot.common.schemas import Bar, Decision


@runtime_checkable
class DataProvider(Protocol):
    """Source of historical OHLCV bars."""

    async def fetch_bars(
        self,
        symbol: str,
        timeframe: str,
        start_date: datetime,
        end_date: datetime,
    ) -> list[Bar]:
        """Return bars for [start_date, end_date] ordered by timestamp.

        May return fewer bars than the caller needs; the engine enforces
        its own minimum.

        Raises:
            DataFetchError: On provider outage.
        """
        ...


@runtime_checkable
class DecisionOracle(Protocol):
    """Produces a trading decision from the current market state."""

    async def decide(
        self,
        symbol: str,
        timeframe: str,
        balance: float,
        open_positions: Sequence[OpenPosition],
        analysis_window: Sequence[Bar],
    ) -> Decision | Mapping[str, Any]:
        ...


@runtime_checkable
class ChartRenderer(Protocol):
    """Renders an analysis window into an image (opaque to the engine)."""

    async def render(self, bars: Sequence[Bar], symbol: str) -> bytes:
        ...


@runtime_checkable
class ResultSink(Protocol):
    """Stores a finished backtest."""

    async def store(self, result: BacktestResult) -> str:
        """Store the summary row and return its backtest id."""
        ...

    async def store_trades(self, backtest_id: str, trades: Sequence[ClosedPosition]) -> None:
        ...

    async def store_analysis_history(
        self, backtest_id: str, history: Sequence[AnalysisRecord]
    ) -> None:
        ...

    async def store_equity_curve(self, backtest_id: str, curve: Sequence[EquityPoint]) -> None:
        ...
