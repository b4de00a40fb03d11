"""Position lifecycle for backtesting — open, check exits, close.

Pure functions over the frozen position variants in schemas.py:

- execute_position() turns an oracle Decision into an OpenPosition
  (fixed-fractional sizing) or None.
- update_open_positions() checks every open position against a bar's
  high/low and partitions them into still-open and closed-this-bar,
  preserving list order.
- close_position() is the only place a ClosedPosition is built.

Stop-loss is checked before take-profit. When one bar touches both, the
position is assumed to have hit the stop first (worst intrabar path).

Usage:
    from chartbot.backtesting.positions import update_open_positions

    still_open, closed = update_open_positions(positions, bar, balance)
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

from chartbot.backtesting.exceptions import SizingError
from chartbot.backtesting.schemas import ClosedPosition, OpenPosition
from chartbot.common.logging import get_logger
from chartbot.common.schemas import Bar, Decision, ExitReason

logger = get_logger("BACKTEST")


def update_open_positions(
    positions: Sequence[OpenPosition],
    current_bar: Bar,
    balance: float,
) -> tuple[list[OpenPosition], list[ClosedPosition]]:
    """Apply stop-loss / take-profit rules for one bar.

    Args:
        positions: Currently open positions, in entry order.
        current_bar: The bar just reached.
        balance: Current account balance (only used for pnl_percentage).

    Returns:
        (still_open, closed) — both keep the input order.
    """
    still_open: list[OpenPosition] = []
    closed: list[ClosedPosition] = []

    for position in positions:
        exit_ = _check_exit(position, current_bar)
        if exit_ is None:
            still_open.append(position)
            continue

        exit_price, reason = exit_
        closed_position = close_position(
            position, exit_price, current_bar.timestamp, reason, balance
        )
        closed.append(closed_position)
        logger.info(
            "Position closed",
            extra={
                "data": {
                    "symbol": position.symbol,
                    "side": position.side,
                    "reason": reason,
                    "exit_price": exit_price,
                    "pnl": closed_position.pnl,
                    "timestamp": current_bar.timestamp,
                }
            },
        )

    return still_open, closed


def _check_exit(position: OpenPosition, bar: Bar) -> tuple[float, ExitReason] | None:
    """Return (exit_price, reason) if this bar triggers an exit, else None."""
    if position.side == "long":
        if bar.low <= position.stop_loss:
            return position.stop_loss, "stop_loss"
        if bar.high >= position.take_profit:
            return position.take_profit, "take_profit"
    else:
        if bar.high >= position.stop_loss:
            return position.stop_loss, "stop_loss"
        if bar.low <= position.take_profit:
            return position.take_profit, "take_profit"
    return None


def calculate_position_size(
    balance: float,
    risk_fraction: float,
    entry_price: float,
    stop_loss: float,
) -> int:
    """Fixed-fractional sizing: risk `risk_fraction` of balance down to the stop.

    Args:
        balance: Account balance at entry.
        risk_fraction: Fraction of balance to risk (0.01 = 1%).
        entry_price: Planned entry price.
        stop_loss: Planned stop price.

    Returns:
        Whole number of units, at least 1.

    Raises:
        SizingError: If the stop equals the entry or the result is not a
            positive finite size.
    """
    risk_per_unit = abs(entry_price - stop_loss)
    if risk_per_unit == 0:
        raise SizingError(
            "Stop loss equals entry price; risk per unit is zero",
            context={"entry_price": entry_price, "stop_loss": stop_loss},
        )

    raw_size = (balance * risk_fraction) / risk_per_unit
    if not math.isfinite(raw_size):
        raise SizingError(
            "Position size is not finite",
            context={"balance": balance, "risk_fraction": risk_fraction},
        )

    size = math.floor(raw_size)
    if size < 1:
        raise SizingError(
            f"Position size rounds down to {size}",
            context={
                "balance": balance,
                "risk_fraction": risk_fraction,
                "risk_per_unit": risk_per_unit,
            },
        )
    return size


def execute_position(
    symbol: str,
    decision: Decision,
    current_bar: Bar,
    balance: float,
    default_risk_per_trade: float,
) -> OpenPosition | None:
    """Open a position from an oracle decision.

    Args:
        symbol: Instrument being traded.
        decision: The oracle's decision for this bar.
        current_bar: Bar at which the position is entered.
        balance: Current account balance (used for sizing).
        default_risk_per_trade: Risk fraction when the decision has none.

    Returns:
        A new OpenPosition, or None when the decision is not actionable,
        lacks a price, or cannot be sized.
    """
    if not decision.is_actionable or decision.recommendation is None:
        return None

    rec = decision.recommendation
    if not rec.entry_price or not rec.stop_loss or not rec.take_profit:
        return None

    risk_fraction = rec.risk_percentage or default_risk_per_trade
    try:
        size = calculate_position_size(balance, risk_fraction, rec.entry_price, rec.stop_loss)
    except SizingError as exc:
        logger.warning(
            "Skipping entry, position could not be sized",
            extra={"data": {"symbol": symbol, "error": str(exc)}},
        )
        return None

    return OpenPosition(
        symbol=symbol,
        side="long" if decision.action == "buy" else "short",
        entry_price=rec.entry_price,
        entry_time=current_bar.timestamp,
        size=size,
        stop_loss=rec.stop_loss,
        take_profit=rec.take_profit,
    )


def close_position(
    position: OpenPosition | ClosedPosition,
    exit_price: float,
    exit_time: datetime,
    reason: ExitReason,
    balance_at_close: float,
) -> ClosedPosition:
    """Close a position and compute its realized P&L.

    Closing an already closed position returns it unchanged.

    Args:
        position: The position to close.
        exit_price: Fill price at exit.
        exit_time: Timestamp of the exit bar.
        reason: Why the position was closed.
        balance_at_close: Balance used for pnl_percentage. A zero balance
            yields NaN.

    Returns:
        The ClosedPosition.
    """
    if isinstance(position, ClosedPosition):
        return position

    if position.side == "long":
        pnl = (exit_price - position.entry_price) * position.size
    else:
        pnl = (position.entry_price - exit_price) * position.size

    pnl_percentage = pnl / balance_at_close * 100 if balance_at_close != 0 else math.nan

    return ClosedPosition(
        **position.model_dump(exclude={"status"}),
        exit_price=exit_price,
        exit_time=exit_time,
        reason=reason,
        pnl=pnl,
        pnl_percentage=pnl_percentage,
    )
