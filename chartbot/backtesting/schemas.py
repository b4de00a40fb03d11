"""Pydantic schemas for backtesting configuration, positions and results.

Positions are modeled as two state-tagged variants. An OpenPosition has no
exit fields at all; a ClosedPosition requires every exit field at
construction. Both are frozen, so a position can only move from open to
closed by building a new ClosedPosition (see positions.close_position).
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from chartbot.common.schemas import Decision, ExitReason, PositionSide

# ─── Configuration ───


class BacktestConfig(BaseModel):
    """Configuration for a backtest run.

    Date ordering is deliberately not validated here: the engine raises
    InvalidRangeError before fetching any data.
    """

    symbol: str = Field(min_length=1)
    timeframe: str = "1h"
    start_date: datetime
    end_date: datetime
    initial_balance: float = Field(default=100_000.0, gt=0)
    risk_per_trade: float = Field(default=0.01, gt=0.0, le=1.0)  # fraction of balance


# ─── Positions ───


class OpenPosition(BaseModel):
    """A simulated position that has been entered but not exited."""

    model_config = ConfigDict(frozen=True)

    status: Literal["open"] = "open"
    symbol: str
    side: PositionSide
    entry_price: float
    entry_time: datetime
    size: int = Field(ge=1)
    stop_loss: float
    take_profit: float

    @property
    def is_open(self) -> bool:
        return True


class ClosedPosition(BaseModel):
    """A simulated position with its exit and realized P&L."""

    model_config = ConfigDict(frozen=True)

    status: Literal["closed"] = "closed"
    symbol: str
    side: PositionSide
    entry_price: float
    entry_time: datetime
    size: int = Field(ge=1)
    stop_loss: float
    take_profit: float
    exit_price: float
    exit_time: datetime
    reason: ExitReason
    pnl: float
    pnl_percentage: float  # NaN when closed against a zero balance

    @property
    def is_open(self) -> bool:
        return False

    @field_serializer("pnl_percentage", when_used="json")
    def _serialize_pnl_percentage(self, value: float) -> float | None:
        return value if math.isfinite(value) else None


Position = Annotated[OpenPosition | ClosedPosition, Field(discriminator="status")]


# ─── Equity / Analysis ───


class EquityPoint(BaseModel):
    """Running account balance after one processed bar."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    balance: float


class AnalysisRecord(BaseModel):
    """What the decision oracle said for one processed bar.

    `decision` is None when the oracle failed for this bar; `error` then
    holds the failure message.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    decision: Decision | None = None
    chart_image: str | None = None  # base64-encoded renderer output
    error: str | None = None


# ─── Statistics ───


class BacktestStats(BaseModel):
    """Summary statistics derived from the trade log and equity curve."""

    model_config = ConfigDict(frozen=True)

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0  # fraction, 0.0-1.0
    average_win: float = 0.0
    average_loss: float = 0.0  # positive magnitude
    profit_factor: float = 0.0  # inf when there are wins and no losses
    max_drawdown: float = 0.0
    max_drawdown_percentage: float = 0.0

    @field_serializer("profit_factor", when_used="json")
    def _serialize_profit_factor(self, value: float) -> float | str:
        return "Infinity" if math.isinf(value) else value


# ─── Full Backtest Result ───


class BacktestResult(BaseModel):
    """Complete, immutable result of a backtest run."""

    model_config = ConfigDict(frozen=True)

    config: BacktestConfig
    final_balance: float
    stats: BacktestStats
    trades: list[ClosedPosition] = []
    equity_curve: list[EquityPoint] = []
    analysis_history: list[AnalysisRecord] = []
    duration_seconds: float = 0.0
    backtest_id: str | None = None

    @property
    def symbol(self) -> str:
        return self.config.symbol

    @property
    def timeframe(self) -> str:
        return self.config.timeframe

    @property
    def initial_balance(self) -> float:
        return self.config.initial_balance

    @property
    def total_trades(self) -> int:
        return self.stats.total_trades

    @property
    def win_rate(self) -> float:
        return self.stats.win_rate

    @property
    def profit_factor(self) -> float:
        return self.stats.profit_factor

    @property
    def total_pnl(self) -> float:
        """Sum of realized P&L over every closed trade."""
        return sum(t.pnl for t in self.trades)
