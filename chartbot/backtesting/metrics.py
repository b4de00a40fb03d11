"""Metrics calculator for backtest results.

Computes aggregate statistics from the closed-trade log and equity curve:
- Win rate, average win, average loss
- Profit factor
- Maximum drawdown (absolute and percentage of peak)

A trade with pnl == 0 counts as a loss.

Usage:
    from chartbot.backtesting.metrics import calculate_statistics

    stats = calculate_statistics(trades, 100_000, final_balance, equity_curve)
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from chartbot.backtesting.schemas import BacktestStats, ClosedPosition, EquityPoint


def calculate_statistics(
    trades: Sequence[ClosedPosition],
    initial_balance: float,
    final_balance: float,
    equity_curve: Sequence[EquityPoint],
) -> BacktestStats:
    """Compute all summary statistics for a finished run.

    Args:
        trades: Trade log (only entries with an exit price are counted).
        initial_balance: Starting balance; seeds the drawdown peak.
        final_balance: Ending balance (not used by any current statistic).
        equity_curve: Balance per processed bar, in order.

    Returns:
        BacktestStats.
    """
    closed = [t for t in trades if getattr(t, "exit_price", None) is not None]
    winners = [t for t in closed if t.pnl > 0]
    losers = [t for t in closed if t.pnl <= 0]

    total_wins = sum(t.pnl for t in winners)
    total_losses = abs(sum(t.pnl for t in losers))

    max_dd, max_dd_pct = _compute_max_drawdown(equity_curve, initial_balance)

    return BacktestStats(
        total_trades=len(closed),
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=len(winners) / max(len(closed), 1),
        average_win=total_wins / len(winners) if winners else 0.0,
        average_loss=total_losses / len(losers) if losers else 0.0,
        profit_factor=_compute_profit_factor(total_wins, total_losses),
        max_drawdown=max_dd,
        max_drawdown_percentage=max_dd_pct,
    )


def _compute_profit_factor(total_wins: float, total_losses: float) -> float:
    """Gross wins / gross losses; inf with wins and no losses, 0 with neither."""
    if total_losses > 0:
        return total_wins / total_losses
    if total_wins > 0:
        return math.inf
    return 0.0


def _compute_max_drawdown(
    equity_curve: Sequence[EquityPoint],
    initial_balance: float,
) -> tuple[float, float]:
    """Largest peak-to-trough decline in the equity curve.

    The running peak starts at initial_balance. Ties keep the first
    occurrence, so the percentage belongs to the earliest largest drawdown.

    Args:
        equity_curve: Balance per processed bar, in order.
        initial_balance: Starting balance.

    Returns:
        (max_drawdown, max_drawdown_percentage)
    """
    peak = initial_balance
    max_dd = 0.0
    max_dd_pct = 0.0

    for point in equity_curve:
        if point.balance > peak:
            peak = point.balance
        drawdown = peak - point.balance
        if drawdown > max_dd:
            max_dd = drawdown
            max_dd_pct = drawdown / peak * 100

    return max_dd, max_dd_pct
