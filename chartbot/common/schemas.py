"""Pydantic schemas — the interface contracts between the engine and its collaborators.

These are the data shapes that flow from the market-data provider (bars)
and the decision oracle (decisions) into the backtesting engine.

RULES:
- Collaborators must produce these types, never ad-hoc dicts or custom classes.
  (The engine still accepts a plain mapping from an oracle and validates it.)
- Prices are floats in the instrument's quote currency.
- Confidence is on a 0-100 percentage scale.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ─── Literal Types ───

DecisionAction = Literal["buy", "sell", "hold"]
PositionSide = Literal["long", "short"]
ExitReason = Literal["stop_loss", "take_profit", "end_of_backtest"]


# ─── Market Data (provider → engine) ───


class Bar(BaseModel):
    """One OHLCV sample for a fixed time interval.

    Sequences of bars are expected in strictly increasing timestamp order.
    The engine relies on that ordering but does not check it.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @model_validator(mode="after")
    def validate_range(self) -> Bar:
        """Ensure high >= low."""
        if self.high < self.low:
            msg = f"Bar high ({self.high}) must be >= low ({self.low})"
            raise ValueError(msg)
        return self


# ─── Decisions (oracle → engine) ───


class Recommendation(BaseModel):
    """Entry/exit prices proposed by the oracle.

    Any of the price fields may be missing; the engine then opens nothing.
    """

    entry_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    risk_percentage: float | None = Field(default=None, gt=0.0, le=1.0)  # fraction


class Decision(BaseModel):
    """A trading decision for the current bar."""

    action: DecisionAction
    confidence: float = Field(ge=0.0, le=100.0)
    recommendation: Recommendation | None = None
    reasoning: str | None = None

    @property
    def is_actionable(self) -> bool:
        """True if the action is buy or sell."""
        return self.action != "hold"
