"""
Apps package - process entrypoints for the backtest platform.

This package contains:
- backtest_worker: RQ worker consuming backtest pipeline stage jobs
"""
