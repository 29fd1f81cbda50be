"""
trailing_service
================

Smart trailing stop for open positions.  Classifies the market regime,
picks a stop algorithm from learned per-regime statistics, and only ever
tightens the stop, by at most a fraction of ATR per update.

Modules
-------
regime.py      → TRENDING / RANGING / VOLATILE classifier
algorithms.py  → volatility, trend, momentum, swing-level, profit stops
engine.py      → selection + acceptance rules, per-position scheduler
"""
