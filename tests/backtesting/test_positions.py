"""Tests for position lifecycle — exits, sizing, closing."""

from __future__ import annotations

import math
from datetime import UTC, datetime

import pytest

from chartbot.backtesting.exceptions import SizingError
from chartbot.backtesting.positions import (
    calculate_position_size,
    close_position,
    execute_position,
    update_open_positions,
)
from chartbot.backtesting.schemas import ClosedPosition, OpenPosition
from chartbot.common.schemas import Bar, Decision, Recommendation

from .conftest import buy, make_open_position, sell

EXIT_TIME = datetime(2025, 3, 5, 15, 30, tzinfo=UTC)


def _bar(high: float, low: float, close: float = 100.0) -> Bar:
    return Bar(timestamp=EXIT_TIME, open=close, high=high, low=low, close=close, volume=10)


class TestUpdateOpenPositions:
    """Tests for update_open_positions()."""

    def test_long_stop_loss_hit(self, long_position):
        still_open, closed = update_open_positions([long_position], _bar(101, 95), 100_000)
        assert still_open == []
        assert len(closed) == 1
        assert closed[0].reason == "stop_loss"
        assert closed[0].exit_price == 95.0
        assert closed[0].exit_time == EXIT_TIME

    def test_long_take_profit_hit(self, long_position):
        _, closed = update_open_positions([long_position], _bar(110, 99), 100_000)
        assert closed[0].reason == "take_profit"
        assert closed[0].exit_price == 110.0

    def test_short_stop_loss_hit(self, short_position):
        _, closed = update_open_positions([short_position], _bar(105, 99), 100_000)
        assert closed[0].reason == "stop_loss"
        assert closed[0].exit_price == 105.0

    def test_short_take_profit_hit(self, short_position):
        _, closed = update_open_positions([short_position], _bar(101, 90), 100_000)
        assert closed[0].reason == "take_profit"
        assert closed[0].exit_price == 90.0

    def test_long_stop_wins_when_both_touched(self, long_position):
        """A bar spanning both stop and target closes at the stop."""
        _, closed = update_open_positions([long_position], _bar(115, 90), 100_000)
        assert len(closed) == 1
        assert closed[0].reason == "stop_loss"
        assert closed[0].exit_price == 95.0

    def test_short_stop_wins_when_both_touched(self, short_position):
        _, closed = update_open_positions([short_position], _bar(106, 85), 100_000)
        assert len(closed) == 1
        assert closed[0].reason == "stop_loss"
        assert closed[0].exit_price == 105.0

    def test_untouched_position_stays_open(self, long_position):
        still_open, closed = update_open_positions([long_position], _bar(105, 96), 100_000)
        assert still_open == [long_position]
        assert closed == []

    def test_partition_preserves_order(self):
        a = make_open_position(entry=100, stop=99, target=120)  # stopped
        b = make_open_position(entry=100, stop=80, target=120)  # stays
        c = make_open_position(entry=100, stop=97, target=120)  # stopped
        d = make_open_position(entry=100, stop=70, target=130)  # stays
        still_open, closed = update_open_positions([a, b, c, d], _bar(101, 96.5), 100_000)
        assert still_open == [b, d]
        assert [p.stop_loss for p in closed] == [99, 97]

    def test_balance_used_for_percentage(self, long_position):
        _, closed = update_open_positions([long_position], _bar(101, 94), 50_000)
        assert closed[0].pnl == pytest.approx(-1000.0)
        assert closed[0].pnl_percentage == pytest.approx(-2.0)

    def test_empty_list(self, sample_bar):
        assert update_open_positions([], sample_bar, 100_000) == ([], [])


class TestCalculatePositionSize:
    """Tests for calculate_position_size()."""

    def test_one_percent_risk(self):
        assert calculate_position_size(100_000, 0.01, 100, 95) == 200

    def test_floors_fractional_units(self):
        # 1000 / 3 = 333.33
        assert calculate_position_size(100_000, 0.01, 100, 97) == 333

    def test_short_side_uses_absolute_distance(self):
        assert calculate_position_size(100_000, 0.01, 100, 105) == 200

    def test_zero_risk_per_unit_raises(self):
        with pytest.raises(SizingError, match="risk per unit is zero"):
            calculate_position_size(100_000, 0.01, 100, 100)

    def test_size_below_one_raises(self):
        with pytest.raises(SizingError, match="rounds down to 0"):
            calculate_position_size(100, 0.01, 100, 50)


class TestExecutePosition:
    """Tests for execute_position()."""

    def test_buy_opens_long(self, sample_bar):
        position = execute_position("AAPL", buy(), sample_bar, 100_000, 0.01)
        assert isinstance(position, OpenPosition)
        assert position.side == "long"
        assert position.size == 200
        assert position.entry_price == 100.0
        assert position.stop_loss == 95.0
        assert position.take_profit == 110.0
        assert position.entry_time == sample_bar.timestamp
        assert position.is_open

    def test_sell_opens_short(self, sample_bar):
        position = execute_position("AAPL", sell(), sample_bar, 100_000, 0.01)
        assert position.side == "short"
        assert position.size == 200

    def test_hold_returns_none(self, sample_bar):
        decision = Decision(
            action="hold",
            confidence=99,
            recommendation=Recommendation(entry_price=100, stop_loss=95, take_profit=110),
        )
        assert execute_position("AAPL", decision, sample_bar, 100_000, 0.01) is None

    def test_missing_recommendation_returns_none(self, sample_bar):
        decision = Decision(action="buy", confidence=99)
        assert execute_position("AAPL", decision, sample_bar, 100_000, 0.01) is None

    @pytest.mark.parametrize("missing", ["entry_price", "stop_loss", "take_profit"])
    def test_missing_price_returns_none(self, sample_bar, missing):
        prices = {"entry_price": 100.0, "stop_loss": 95.0, "take_profit": 110.0}
        prices[missing] = None
        decision = Decision(
            action="buy", confidence=99, recommendation=Recommendation(**prices)
        )
        assert execute_position("AAPL", decision, sample_bar, 100_000, 0.01) is None

    def test_decision_risk_overrides_default(self, sample_bar):
        position = execute_position("AAPL", buy(risk=0.02), sample_bar, 100_000, 0.01)
        assert position.size == 400

    def test_zero_risk_per_unit_returns_none(self, sample_bar):
        """Stop at entry is a sizing failure, not a crash."""
        decision = buy(entry=100.0, stop=100.0)
        assert execute_position("AAPL", decision, sample_bar, 100_000, 0.01) is None


class TestClosePosition:
    """Tests for close_position()."""

    def test_long_loss_scenario(self, long_position):
        """100k balance, long 200 @ 100 stopped at 95 → -1000, -1%."""
        closed = close_position(long_position, 95.0, EXIT_TIME, "stop_loss", 100_000)
        assert isinstance(closed, ClosedPosition)
        assert closed.pnl == pytest.approx(-1000.0)
        assert closed.pnl_percentage == pytest.approx(-1.0)
        assert not closed.is_open

    def test_long_profit(self, long_position):
        closed = close_position(long_position, 110.0, EXIT_TIME, "take_profit", 100_000)
        assert closed.pnl == pytest.approx(2000.0)
        assert closed.pnl_percentage == pytest.approx(2.0)

    def test_short_profit(self, short_position):
        closed = close_position(short_position, 90.0, EXIT_TIME, "take_profit", 100_000)
        assert closed.pnl == pytest.approx(2000.0)

    def test_short_loss(self, short_position):
        closed = close_position(short_position, 105.0, EXIT_TIME, "stop_loss", 100_000)
        assert closed.pnl == pytest.approx(-1000.0)

    def test_exit_fields_set_together(self, long_position):
        closed = close_position(long_position, 101.0, EXIT_TIME, "end_of_backtest", 100_000)
        assert closed.exit_price == 101.0
        assert closed.exit_time == EXIT_TIME
        assert closed.reason == "end_of_backtest"
        assert closed.entry_price == long_position.entry_price
        assert closed.size == long_position.size

    def test_zero_balance_gives_nan_percentage(self, long_position):
        closed = close_position(long_position, 101.0, EXIT_TIME, "end_of_backtest", 0)
        assert closed.pnl == pytest.approx(200.0)
        assert math.isnan(closed.pnl_percentage)

    def test_closing_twice_is_a_no_op(self, long_position):
        first = close_position(long_position, 95.0, EXIT_TIME, "stop_loss", 100_000)
        second = close_position(first, 120.0, datetime(2025, 4, 1, tzinfo=UTC), "take_profit", 1)
        assert second is first
        assert second.pnl == pytest.approx(-1000.0)
        assert second.reason == "stop_loss"

    def test_open_position_is_not_mutated(self, long_position):
        close_position(long_position, 95.0, EXIT_TIME, "stop_loss", 100_000)
        assert long_position.is_open
        assert not hasattr(long_position, "exit_price")
