"""
trade_manager
=============

Owns what is actually held and what the operator sees.

• tracker.py  → per-instrument position state machine, reconciled
                against every venue status tick.
• risk.py     → session RiskState (daily P&L, trade count, streaks).
• manager.py  → status broadcaster + REST / websocket API for ops
                dashboards, including the pause kill switch.
"""
