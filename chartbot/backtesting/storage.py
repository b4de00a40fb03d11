"""SQL result sink — stores finished backtests via SQLAlchemy.

Implements the ResultSink protocol over an AsyncSession. Rows are added
and flushed; the caller owns the transaction and must commit (or roll
back on PersistenceFailedError).

Usage:
    from chartbot.backtesting.storage import SqlResultSink

    async with await get_task_session() as db:
        engine = BacktestEngine(provider, oracle, sink=SqlResultSink(db))
        result = await engine.run(config)
        await db.commit()
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from chartbot.backtesting.schemas import (
    AnalysisRecord,
    BacktestResult,
    ClosedPosition,
    EquityPoint,
)
from chartbot.common.logging import get_logger
from chartbot.common.models import (
    Backtest,
    BacktestAnalysis,
    BacktestEquityPoint,
    BacktestTrade,
    ExitReasonEnum,
    PositionSideEnum,
)

logger = get_logger("STORAGE")


def _finite_or_none(value: float) -> float | None:
    """Map NaN / inf to None so they are stored as NULL."""
    return value if math.isfinite(value) else None


class SqlResultSink:
    """Persists backtest results into the backtests tables.

    Args:
        db: Async SQLAlchemy session for database operations.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def store(self, result: BacktestResult) -> str:
        """Insert the summary row.

        Args:
            result: The finished backtest.

        Returns:
            The new backtest id.
        """
        backtest_id = str(uuid4())
        stats = result.stats
        self.db.add(
            Backtest(
                id=backtest_id,
                symbol=result.config.symbol,
                timeframe=result.config.timeframe,
                start_date=result.config.start_date,
                end_date=result.config.end_date,
                initial_balance=result.config.initial_balance,
                final_balance=result.final_balance,
                risk_per_trade=result.config.risk_per_trade,
                total_trades=stats.total_trades,
                winning_trades=stats.winning_trades,
                losing_trades=stats.losing_trades,
                win_rate=stats.win_rate,
                average_win=stats.average_win,
                average_loss=stats.average_loss,
                profit_factor=_finite_or_none(stats.profit_factor),
                max_drawdown=stats.max_drawdown,
                max_drawdown_percentage=stats.max_drawdown_percentage,
                duration_seconds=result.duration_seconds,
            )
        )
        await self.db.flush()

        logger.info(
            "Backtest stored",
            extra={"data": {"backtest_id": backtest_id, "symbol": result.config.symbol}},
        )
        return backtest_id

    async def store_trades(self, backtest_id: str, trades: Sequence[ClosedPosition]) -> None:
        """Insert one row per closed trade."""
        self.db.add_all(
            [
                BacktestTrade(
                    backtest_id=backtest_id,
                    symbol=t.symbol,
                    side=PositionSideEnum(t.side),
                    entry_price=t.entry_price,
                    entry_time=t.entry_time,
                    size=t.size,
                    stop_loss=t.stop_loss,
                    take_profit=t.take_profit,
                    exit_price=t.exit_price,
                    exit_time=t.exit_time,
                    reason=ExitReasonEnum(t.reason),
                    pnl=t.pnl,
                    pnl_percentage=_finite_or_none(t.pnl_percentage),
                )
                for t in trades
            ]
        )
        await self.db.flush()

    async def store_analysis_history(
        self, backtest_id: str, history: Sequence[AnalysisRecord]
    ) -> None:
        """Insert one row per processed bar's oracle output."""
        self.db.add_all(
            [
                BacktestAnalysis(
                    backtest_id=backtest_id,
                    timestamp=record.timestamp,
                    action=record.decision.action if record.decision else None,
                    confidence=record.decision.confidence if record.decision else None,
                    analysis_result=(
                        record.decision.model_dump(mode="json") if record.decision else None
                    ),
                    chart_image=record.chart_image,
                    error=record.error,
                )
                for record in history
            ]
        )
        await self.db.flush()

    async def store_equity_curve(self, backtest_id: str, curve: Sequence[EquityPoint]) -> None:
        """Insert one row per equity point."""
        self.db.add_all(
            [
                BacktestEquityPoint(
                    backtest_id=backtest_id,
                    timestamp=point.timestamp,
                    balance=point.balance,
                )
                for point in curve
            ]
        )
        await self.db.flush()
