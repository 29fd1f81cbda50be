"""
rules.py  – reusable helpers for entry / exit levels
====================================================
Pure-function utilities only; no Redis, no side-effects.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from shared.config import EngineConfig
from shared.models import Direction, EnsembleDecision, Position, TradeLevels, Tier
from shared.utils import round_tick


# ---------------------------------------------------------------------
def trade_levels(direction: Direction, price: float, atr: float,
                 cfg: EngineConfig, tick: float = 0.0) -> Optional[TradeLevels]:
    """
    ATR-anchored stop and two targets on the correct side of `price`.
    None for HOLD or when no volatility estimate is available.
    """
    if direction is Direction.HOLD or atr <= 0 or price <= 0:
        return None
    sgn = direction.sign
    stop = round_tick(price - sgn * cfg.stop_atr_mult * atr, tick)
    t1 = round_tick(price + sgn * cfg.target1_atr_mult * atr, tick)
    t2 = round_tick(price + sgn * cfg.target2_atr_mult * atr, tick)
    return TradeLevels(entry=price, stop=stop, target1=t1, target2=t2)


def is_reversal(decision: EnsembleDecision, position: Position) -> bool:
    """A strong signal against the side currently held."""
    return (position.is_live
            and decision.tier is Tier.STRONG
            and decision.direction is position.direction.opposite())


def hold_expired(position: Position, now: datetime, max_hold_min: float) -> bool:
    if not position.is_live or position.opened_at is None or max_hold_min <= 0:
        return False
    return now - position.opened_at >= timedelta(minutes=max_hold_min)
