"""SQLAlchemy ORM models for persisted backtests.

One `backtests` row per completed run, with child rows for closed trades,
per-bar analysis records and equity curve points.

Floats that are not finite (infinite profit factor, NaN end-of-run
percentages) are stored as NULL; see chartbot.backtesting.storage.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class PositionSideEnum(enum.StrEnum):
    LONG = "long"
    SHORT = "short"


class ExitReasonEnum(enum.StrEnum):
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    END_OF_BACKTEST = "end_of_backtest"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values ('long') rather than member names ('LONG')."""
    return [member.value for member in enum_cls]


class Backtest(Base):
    """Summary row for one backtest run."""

    __tablename__ = "backtests"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    symbol: Mapped[str] = mapped_column(String, nullable=False, index=True)
    timeframe: Mapped[str] = mapped_column(String, nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    initial_balance: Mapped[float] = mapped_column(Float, nullable=False)
    final_balance: Mapped[float] = mapped_column(Float, nullable=False)
    risk_per_trade: Mapped[float] = mapped_column(Float, nullable=False)
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    winning_trades: Mapped[int] = mapped_column(Integer, default=0)
    losing_trades: Mapped[int] = mapped_column(Integer, default=0)
    win_rate: Mapped[float] = mapped_column(Float, default=0.0)
    average_win: Mapped[float] = mapped_column(Float, default=0.0)
    average_loss: Mapped[float] = mapped_column(Float, default=0.0)
    profit_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_drawdown: Mapped[float] = mapped_column(Float, default=0.0)
    max_drawdown_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    duration_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    trades: Mapped[list[BacktestTrade]] = relationship(
        back_populates="backtest", cascade="all, delete-orphan"
    )
    analysis: Mapped[list[BacktestAnalysis]] = relationship(
        back_populates="backtest", cascade="all, delete-orphan"
    )
    equity_curve: Mapped[list[BacktestEquityPoint]] = relationship(
        back_populates="backtest", cascade="all, delete-orphan"
    )


class BacktestTrade(Base):
    """A closed simulated trade belonging to a backtest."""

    __tablename__ = "backtest_trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backtest_id: Mapped[str] = mapped_column(
        String, ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    symbol: Mapped[str] = mapped_column(String, nullable=False)
    side: Mapped[PositionSideEnum] = mapped_column(
        Enum(PositionSideEnum, name="position_side", values_callable=_enum_values),
        nullable=False,
    )
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    entry_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    stop_loss: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit: Mapped[float] = mapped_column(Float, nullable=False)
    exit_price: Mapped[float] = mapped_column(Float, nullable=False)
    exit_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[ExitReasonEnum] = mapped_column(
        Enum(ExitReasonEnum, name="exit_reason", values_callable=_enum_values),
        nullable=False,
    )
    pnl: Mapped[float] = mapped_column(Float, nullable=False)
    pnl_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)

    backtest: Mapped[Backtest] = relationship(back_populates="trades")


class BacktestAnalysis(Base):
    """The oracle's output for one processed bar."""

    __tablename__ = "backtest_analysis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backtest_id: Mapped[str] = mapped_column(
        String, ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    action: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    analysis_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    chart_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    backtest: Mapped[Backtest] = relationship(back_populates="analysis")


class BacktestEquityPoint(Base):
    """Running balance after one processed bar."""

    __tablename__ = "backtest_equity_curve"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backtest_id: Mapped[str] = mapped_column(
        String, ForeignKey("backtests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    balance: Mapped[float] = mapped_column(Float, nullable=False)

    backtest: Mapped[Backtest] = relationship(back_populates="equity_curve")
