"""Backtesting engine — asynchronous bar-by-bar simulation.

Replays historical bars through an external decision oracle, opening and
closing simulated positions and tracking the realized account balance.

Per processed bar (index >= warm-up):
    1. Check open positions for stop-loss / take-profit exits
    2. Ask the oracle for a decision over the trailing analysis window
    3. Open a position if gating allows (open count, action, confidence)
    4. Add this bar's realized P&L to the balance
    5. Append an equity point

Bars are processed strictly in order; every oracle call is awaited before
the loop moves on. An engine holds only its collaborators, and all mutable
state lives in a per-run _RunState, so one engine can serve concurrent runs.

Usage:
    from chartbot.backtesting.engine import BacktestEngine

    engine = BacktestEngine(data_provider=provider, oracle=oracle, sink=sink)
    result = await engine.run(config)
"""

from __future__ import annotations

import base64
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError

from chartbot.backtesting.exceptions import (
    DataFetchError,
    DecisionError,
    InsufficientDataError,
    InvalidRangeError,
    PersistenceFailedError,
)
from chartbot.backtesting.interfaces import (
    ChartRenderer,
    DataProvider,
    DecisionOracle,
    ResultSink,
)
from chartbot.backtesting.metrics import calculate_statistics
from chartbot.backtesting.positions import (
    close_position,
    execute_position,
    update_open_positions,
)
from chartbot.backtesting.schemas import (
    AnalysisRecord,
    BacktestConfig,
    BacktestResult,
    ClosedPosition,
    EquityPoint,
    OpenPosition,
)
from chartbot.common.config import Settings, get_settings
from chartbot.common.logging import get_logger
from chartbot.common.schemas import Bar, Decision

logger = get_logger("BACKTEST")


@dataclass
class _RunState:
    """Mutable working set owned by exactly one run."""

    balance: float
    positions: list[OpenPosition] = field(default_factory=list)
    trades: list[ClosedPosition] = field(default_factory=list)
    equity_curve: list[EquityPoint] = field(default_factory=list)
    analysis_history: list[AnalysisRecord] = field(default_factory=list)


class BacktestEngine:
    """Runs backtests against injected collaborators.

    Args:
        data_provider: Source of historical bars.
        oracle: Decision oracle consulted once per processed bar.
        sink: Optional result sink; when set, results are stored after the run.
        renderer: Optional chart renderer; its output is kept in the analysis history.
        settings: Gating constants (warm-up, max open positions, min confidence).
            Defaults to get_settings().
    """

    def __init__(
        self,
        data_provider: DataProvider,
        oracle: DecisionOracle,
        sink: ResultSink | None = None,
        renderer: ChartRenderer | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.data_provider = data_provider
        self.oracle = oracle
        self.sink = sink
        self.renderer = renderer
        settings = settings or get_settings()
        self.warmup_bars = settings.backtest_warmup_bars
        self.max_open_positions = settings.backtest_max_open_positions
        self.min_confidence = settings.backtest_min_confidence

    async def run(self, config: BacktestConfig) -> BacktestResult:
        """Run a full backtest simulation.

        Args:
            config: Symbol, timeframe, date range, balance and risk settings.

        Returns:
            The finished BacktestResult (with backtest_id when a sink stored it).

        Raises:
            InvalidRangeError: If start_date is after end_date.
            DataFetchError: If the data provider fails.
            InsufficientDataError: If fewer than warm-up bars are returned.
            PersistenceFailedError: If the sink fails; the result is attached.
        """
        started = time.monotonic()

        logger.info(
            "Starting backtest",
            extra={
                "data": {
                    "symbol": config.symbol,
                    "timeframe": config.timeframe,
                    "start_date": config.start_date,
                    "end_date": config.end_date,
                }
            },
        )

        if config.start_date > config.end_date:
            raise InvalidRangeError(
                f"Start date ({config.start_date.isoformat()}) must be before "
                f"end date ({config.end_date.isoformat()})",
                context={"symbol": config.symbol},
            )

        bars = await self._fetch_bars(config)

        if len(bars) < self.warmup_bars:
            logger.warning(
                "Insufficient historical data",
                extra={"data": {"symbol": config.symbol, "bars": len(bars)}},
            )
            raise InsufficientDataError(
                f"Insufficient historical data. Need at least {self.warmup_bars} bars, "
                f"but got {len(bars)}",
                context={
                    "symbol": config.symbol,
                    "timeframe": config.timeframe,
                    "bars": len(bars),
                    "required": self.warmup_bars,
                },
            )

        state = _RunState(balance=config.initial_balance)
        state.equity_curve.append(
            EquityPoint(timestamp=bars[0].timestamp, balance=config.initial_balance)
        )

        for i in range(self.warmup_bars, len(bars)):
            await self._process_bar(config, bars, i, state)

        final_balance = self._close_remaining(state, bars[-1])

        stats = calculate_statistics(
            state.trades, config.initial_balance, final_balance, state.equity_curve
        )

        result = BacktestResult(
            config=config,
            final_balance=final_balance,
            stats=stats,
            trades=state.trades,
            equity_curve=state.equity_curve,
            analysis_history=state.analysis_history,
            duration_seconds=round(time.monotonic() - started, 4),
        )

        if self.sink is not None:
            result = await self._persist(result)

        logger.info(
            "Backtest completed",
            extra={
                "data": {
                    "symbol": config.symbol,
                    "backtest_id": result.backtest_id,
                    "total_trades": stats.total_trades,
                    "win_rate": stats.win_rate,
                    "profit_factor": stats.profit_factor,
                    "final_balance": final_balance,
                    "analysis_count": len(state.analysis_history),
                    "duration_seconds": result.duration_seconds,
                }
            },
        )

        return result

    async def _fetch_bars(self, config: BacktestConfig) -> list[Bar]:
        """Fetch bars, normalizing provider failures into DataFetchError."""
        try:
            bars = await self.data_provider.fetch_bars(
                config.symbol, config.timeframe, config.start_date, config.end_date
            )
        except DataFetchError:
            raise
        except Exception as exc:
            logger.error(
                "Historical data fetch failed",
                extra={"data": {"symbol": config.symbol, "error": str(exc)}},
            )
            raise DataFetchError(
                f"Failed to fetch bars for {config.symbol}: {exc}",
                context={"symbol": config.symbol, "timeframe": config.timeframe},
            ) from exc
        return list(bars)

    async def _process_bar(
        self,
        config: BacktestConfig,
        bars: Sequence[Bar],
        i: int,
        state: _RunState,
    ) -> None:
        """Advance the simulation by one bar."""
        current_bar = bars[i]

        state.positions, closed = update_open_positions(
            state.positions, current_bar, state.balance
        )
        state.trades.extend(closed)

        window = bars[i - self.warmup_bars : i + 1]
        record = await self._analyze(config, window, current_bar, state)
        state.analysis_history.append(record)

        decision = record.decision
        if (
            decision is not None
            and decision.is_actionable
            and decision.confidence >= self.min_confidence
            and len(state.positions) < self.max_open_positions
        ):
            self._open_position(config, decision, current_bar, state)

        # Only realized P&L moves the balance
        state.balance += sum(t.pnl for t in closed)
        state.equity_curve.append(
            EquityPoint(timestamp=current_bar.timestamp, balance=state.balance)
        )

    def _open_position(
        self,
        config: BacktestConfig,
        decision: Decision,
        current_bar: Bar,
        state: _RunState,
    ) -> None:
        """Enter a position for the decision; a failed entry skips this bar only."""
        try:
            position = execute_position(
                config.symbol, decision, current_bar, state.balance, config.risk_per_trade
            )
        except Exception as exc:
            logger.error(
                "Error opening position, skipping entry",
                extra={
                    "data": {
                        "symbol": config.symbol,
                        "timestamp": current_bar.timestamp,
                        "action": decision.action,
                        "error": str(exc),
                    }
                },
            )
            return

        if position is None:
            return
        state.positions.append(position)
        logger.info(
            "New position opened",
            extra={
                "data": {
                    "symbol": position.symbol,
                    "side": position.side,
                    "size": position.size,
                    "entry_price": position.entry_price,
                    "timestamp": current_bar.timestamp,
                }
            },
        )

    async def _analyze(
        self,
        config: BacktestConfig,
        window: Sequence[Bar],
        current_bar: Bar,
        state: _RunState,
    ) -> AnalysisRecord:
        """Render the window and ask the oracle; failures become an error record."""
        chart_image: str | None = None
        try:
            if self.renderer is not None:
                image = await self.renderer.render(window, config.symbol)
                chart_image = base64.b64encode(image).decode("ascii")

            raw = await self.oracle.decide(
                config.symbol,
                config.timeframe,
                state.balance,
                list(state.positions),
                list(window),
            )
            decision = _coerce_decision(raw)
        except DecisionError as exc:
            return self._recover(current_bar.timestamp, chart_image, exc)
        except Exception as exc:
            error = DecisionError(
                f"Decision oracle failed: {exc}",
                context={"symbol": config.symbol, "error_type": type(exc).__name__},
            )
            return self._recover(current_bar.timestamp, chart_image, error)

        return AnalysisRecord(
            timestamp=current_bar.timestamp,
            decision=decision,
            chart_image=chart_image,
        )

    @staticmethod
    def _recover(
        timestamp: datetime,
        chart_image: str | None,
        error: DecisionError,
    ) -> AnalysisRecord:
        logger.error(
            "Error analyzing bar, skipping decision",
            extra={"data": {"timestamp": timestamp, "error": str(error)}},
        )
        return AnalysisRecord(timestamp=timestamp, chart_image=chart_image, error=str(error))

    @staticmethod
    def _close_remaining(state: _RunState, last_bar: Bar) -> float:
        """Force-close open positions at the last close and return the final balance.

        These closes use a zero balance for pnl_percentage, which yields NaN.
        Their P&L still counts toward the final balance.
        """
        final_balance = state.balance
        for position in state.positions:
            closed = close_position(
                position, last_bar.close, last_bar.timestamp, "end_of_backtest", 0
            )
            state.trades.append(closed)
            final_balance += closed.pnl
        state.positions = []
        return final_balance

    async def _persist(self, result: BacktestResult) -> BacktestResult:
        """Store the result through the sink; failures keep the result attached."""
        try:
            backtest_id = await self.sink.store(result)
            if result.trades:
                await self.sink.store_trades(backtest_id, result.trades)
            await self.sink.store_analysis_history(backtest_id, result.analysis_history)
            await self.sink.store_equity_curve(backtest_id, result.equity_curve)
        except Exception as exc:
            logger.error(
                "Error saving backtest results",
                extra={"data": {"symbol": result.symbol, "error": str(exc)}},
            )
            raise PersistenceFailedError(
                "Failed to save backtest results",
                result=result,
                context={"symbol": result.symbol, "error": str(exc)},
            ) from exc

        return result.model_copy(update={"backtest_id": backtest_id})


def _coerce_decision(raw: Decision | Mapping) -> Decision:
    """Validate an oracle response into a Decision.

    Raises:
        DecisionError: If the response is not a usable decision.
    """
    if isinstance(raw, Decision):
        return raw
    if not isinstance(raw, Mapping):
        raise DecisionError(
            f"Oracle returned {type(raw).__name__}, expected a decision",
        )
    try:
        return Decision.model_validate(raw)
    except ValidationError as exc:
        raise DecisionError(
            "Oracle returned an invalid decision",
            context={"errors": exc.error_count()},
        ) from exc


async def run_backtest(
    symbol: str,
    timeframe: str,
    start_date: datetime,
    end_date: datetime,
    *,
    data_provider: DataProvider,
    oracle: DecisionOracle,
    initial_balance: float | None = None,
    risk_per_trade: float | None = None,
    sink: ResultSink | None = None,
    renderer: ChartRenderer | None = None,
    settings: Settings | None = None,
) -> BacktestResult:
    """Run one backtest with a freshly built engine.

    Convenience wrapper around BacktestEngine.run(); see its docstring.
    initial_balance and risk_per_trade default to DEFAULT_INITIAL_BALANCE
    and DEFAULT_RISK_PER_TRADE from settings.
    """
    settings = settings or get_settings()
    config = BacktestConfig(
        symbol=symbol,
        timeframe=timeframe,
        start_date=start_date,
        end_date=end_date,
        initial_balance=(
            settings.default_initial_balance if initial_balance is None else initial_balance
        ),
        risk_per_trade=(
            settings.default_risk_per_trade if risk_per_trade is None else risk_per_trade
        ),
    )
    engine = BacktestEngine(
        data_provider=data_provider,
        oracle=oracle,
        sink=sink,
        renderer=renderer,
        settings=settings,
    )
    return await engine.run(config)
