"""RQ worker process for backtest pipeline stages."""
