"""Shared fixtures and test doubles for backtesting tests."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import pytest

from chartbot.backtesting.schemas import (
    BacktestConfig,
    ClosedPosition,
    EquityPoint,
    OpenPosition,
)
from chartbot.common.schemas import Bar, Decision, Recommendation
from tests.conftest import BASE_TIME, make_bars


class StaticDataProvider:
    """DataProvider that returns a fixed list of bars."""

    def __init__(self, bars: list[Bar]) -> None:
        self.bars = bars
        self.calls: list[tuple] = []

    async def fetch_bars(self, symbol, timeframe, start_date, end_date) -> list[Bar]:
        self.calls.append((symbol, timeframe, start_date, end_date))
        return list(self.bars)


class ScriptedOracle:
    """DecisionOracle that returns scripted decisions keyed by bar timestamp.

    Bars without a scripted entry get a hold. A scripted Exception instance
    is raised instead of returned.
    """

    def __init__(self, script: dict[datetime, object] | None = None) -> None:
        self.script = script or {}
        self.calls: list[dict] = []

    async def decide(
        self,
        symbol: str,
        timeframe: str,
        balance: float,
        open_positions: Sequence[OpenPosition],
        analysis_window: Sequence[Bar],
    ):
        current = analysis_window[-1].timestamp
        self.calls.append(
            {
                "timestamp": current,
                "balance": balance,
                "open_positions": list(open_positions),
                "window_size": len(analysis_window),
            }
        )
        scripted = self.script.get(current, hold())
        if isinstance(scripted, Exception):
            raise scripted
        return scripted


def hold() -> Decision:
    return Decision(action="hold", confidence=50.0)


def buy(
    entry: float = 100.0,
    stop: float = 95.0,
    target: float = 110.0,
    confidence: float = 90.0,
    risk: float | None = None,
) -> Decision:
    """Helper to create a buy decision with a full recommendation."""
    return Decision(
        action="buy",
        confidence=confidence,
        recommendation=Recommendation(
            entry_price=entry, stop_loss=stop, take_profit=target, risk_percentage=risk
        ),
    )


def sell(
    entry: float = 100.0,
    stop: float = 105.0,
    target: float = 90.0,
    confidence: float = 90.0,
) -> Decision:
    """Helper to create a sell (short) decision with a full recommendation."""
    return Decision(
        action="sell",
        confidence=confidence,
        recommendation=Recommendation(entry_price=entry, stop_loss=stop, take_profit=target),
    )


def make_open_position(
    side: str = "long",
    entry: float = 100.0,
    stop: float = 95.0,
    target: float = 110.0,
    size: int = 200,
) -> OpenPosition:
    return OpenPosition(
        symbol="AAPL",
        side=side,
        entry_price=entry,
        entry_time=BASE_TIME,
        size=size,
        stop_loss=stop,
        take_profit=target,
    )


def make_closed_trade(pnl: float, reason: str = "take_profit") -> ClosedPosition:
    """Helper to create a closed long trade with the given P&L."""
    return ClosedPosition(
        symbol="AAPL",
        side="long",
        entry_price=100.0,
        entry_time=BASE_TIME,
        size=100,
        stop_loss=95.0,
        take_profit=110.0,
        exit_price=100.0 + pnl / 100,
        exit_time=datetime(2025, 3, 4, tzinfo=UTC),
        reason=reason,
        pnl=pnl,
        pnl_percentage=pnl / 100_000 * 100,
    )


def make_equity_curve(balances: list[float]) -> list[EquityPoint]:
    bars = make_bars(len(balances))
    return [
        EquityPoint(timestamp=bar.timestamp, balance=balance)
        for bar, balance in zip(bars, balances, strict=True)
    ]


@pytest.fixture
def default_config() -> BacktestConfig:
    """A 100k AAPL hourly backtest config with 1% risk."""
    return BacktestConfig(
        symbol="AAPL",
        timeframe="1h",
        start_date=datetime(2025, 3, 1, tzinfo=UTC),
        end_date=datetime(2025, 3, 31, tzinfo=UTC),
        initial_balance=100_000.0,
        risk_per_trade=0.01,
    )


@pytest.fixture
def long_position() -> OpenPosition:
    """Long 200 @ 100, stop 95, target 110."""
    return make_open_position()


@pytest.fixture
def short_position() -> OpenPosition:
    """Short 200 @ 100, stop 105, target 90."""
    return make_open_position(side="short", stop=105.0, target=90.0)
