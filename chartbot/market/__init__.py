"""Market-data providers for the backtester."""
