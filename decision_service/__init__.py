"""
decision_service
================

The engine’s main process: turns venue market data into validated
trade commands and keeps open positions managed.

Data-flow
---------
1. `market_data` → rolling window → FeatureVector → ensemble decision
   (+ ATR-anchored stop / targets).

2. Position flat  → validator chain (signal, pause, confidence,
   risk/reward, exposure, cooldown, data quality, circuit breaker,
   position) → OPENING + go_long / go_short.
   Position open  → reversal-streak and max-hold exit checks →
   CLOSING + close_position.

3. Venue status / fills / completions reconcile the tracker; closed
   lifecycles become TradeOutcomes for the learning loop.

Modules
-------
decision_service.py  → DecisionEngine + process entry point
rules.py             → pure level / exit helpers
validators.py        → pluggable validator chain
"""
