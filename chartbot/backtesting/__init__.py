"""Backtesting module — bar-by-bar replay of an external strategy.

Replays historical OHLCV bars through a decision oracle, simulates the
resulting positions and reports win rate, profit factor and drawdown.
"""

from __future__ import annotations
