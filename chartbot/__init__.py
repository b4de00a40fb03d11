"""Chartbot — backtesting engine for chart-analysis trading strategies."""

__version__ = "0.1.0"
