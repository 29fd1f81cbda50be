"""
algorithms.py – stop-placement algorithms for the smart trailing engine
=======================================================================

Every algorithm sees the same `TrailingContext` and proposes an absolute
stop price plus a confidence, or None when it has nothing to say.  They
do not check monotonicity or movement caps; the engine does.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Final, List, Optional, Sequence

import numpy as np
from scipy.signal import argrelextrema

from shared.models import MarketSnapshot, Position
from shared.utils import clamp

from .regime import RegimeReading

SR_ORDER: Final[int] = 3          # bars on each side of a swing point
SR_BUFFER_ATR: Final[float] = 0.3


@dataclass(frozen=True)
class TrailingContext:
    position: Position
    window: Sequence[MarketSnapshot]
    price: float
    atr: float
    reading: RegimeReading

    @property
    def sign(self) -> int:
        return self.position.direction.sign

    def at_distance(self, dist: float) -> float:
        return self.price - self.sign * dist


@dataclass(frozen=True)
class Proposal:
    algorithm: str
    stop: float
    confidence: float


class TrailingAlgorithm:
    name = "algorithm"

    def propose(self, ctx: TrailingContext) -> Optional[Proposal]:
        raise NotImplementedError

    def _make(self, stop: float, confidence: float) -> Proposal:
        return Proposal(self.name, float(stop), clamp(confidence, 0.0, 1.0))


class VolatilityAdaptive(TrailingAlgorithm):
    """ATR distance widened as short-term volatility expands."""

    name = "volatility_adaptive"

    def propose(self, ctx):
        mult = 1.5 * (0.8 + 0.8 * ctx.reading.vol_state)
        return self._make(ctx.at_distance(mult * ctx.atr), 0.8)


class TrendStrength(TrailingAlgorithm):
    """Gives a persistent trend more room; trusted as much as the regime call."""

    name = "trend_strength"

    def propose(self, ctx):
        mult = 1.2 * (0.7 + 0.6 * ctx.reading.persistence)
        return self._make(ctx.at_distance(mult * ctx.atr), ctx.reading.confidence)


class MomentumAdaptive(TrailingAlgorithm):
    """Loose while momentum is with the trade, tight once it turns."""

    name = "momentum_adaptive"

    def propose(self, ctx):
        snap = ctx.window[-1]
        rsi = snap.indicator("rsi", 50.0)
        fast = snap.indicators.get("ema5", snap.indicators.get("ema8"))
        slow = snap.indicators.get("ema21")
        ema_bias = 0.0 if fast is None or slow is None else np.sign(fast - slow)
        rsi_bias = (rsi - 50.0) / 50.0
        momentum = ctx.sign * (0.5 * ema_bias + 0.5 * rsi_bias)
        if momentum > 0.3:
            mult = 2.0
        elif momentum < -0.1:
            mult = 0.8
        else:
            mult = 1.5
        mult *= 0.8 + 0.4 * ctx.reading.vol_state
        return self._make(ctx.at_distance(mult * ctx.atr), 0.85)


class SupportResistance(TrailingAlgorithm):
    """Just beyond the nearest swing low (long) / swing high (short)."""

    name = "support_resistance"

    def propose(self, ctx):
        if len(ctx.window) < 2 * SR_ORDER + 1:
            return None
        if ctx.sign > 0:
            lows = np.asarray([s.bar_low for s in ctx.window], dtype=float)
            idx = argrelextrema(lows, np.less_equal, order=SR_ORDER)[0]
            levels = [lows[i] for i in idx if lows[i] < ctx.price]
            if not levels:
                return None
            level = max(levels)
        else:
            highs = np.asarray([s.bar_high for s in ctx.window], dtype=float)
            idx = argrelextrema(highs, np.greater_equal, order=SR_ORDER)[0]
            levels = [highs[i] for i in idx if highs[i] > ctx.price]
            if not levels:
                return None
            level = min(levels)
        return self._make(level - ctx.sign * SR_BUFFER_ATR * ctx.atr, 0.7)


class ProfitProtection(TrailingAlgorithm):
    """Tightens with open profit and locks break-even after one ATR."""

    name = "profit_protection"

    def propose(self, ctx):
        pos = ctx.position
        if not pos.entry_price or ctx.atr <= 0:
            return None
        profit_atr = (ctx.price - pos.entry_price) * ctx.sign / ctx.atr
        if profit_atr < 1.0:
            mult = 1.5
        elif profit_atr < 2.0:
            mult = 1.2
        elif profit_atr < 3.0:
            mult = 1.0
        else:
            mult = 0.8
        stop = ctx.at_distance(mult * ctx.atr)
        if profit_atr >= 1.0 and (stop - pos.entry_price) * ctx.sign < 0:
            stop = pos.entry_price
        return self._make(stop, 0.9)


def default_algorithms() -> Dict[str, TrailingAlgorithm]:
    algos: List[TrailingAlgorithm] = [VolatilityAdaptive(), TrendStrength(), MomentumAdaptive(),
                                      SupportResistance(), ProfitProtection()]
    return {a.name: a for a in algos}
