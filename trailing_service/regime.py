"""
regime.py – coarse market regime from volatility + persistence
--------------------------------------------------------------
• vol_ratio   : short (10) vs long (50) realised volatility of log returns
• vol_state   : vol_ratio mapped to [0, 1]   (ratio 0.5 → 0, ratio 2.0 → 1)
• persistence : max(Kaufman efficiency over 20 bars, ADX / 50)

VOLATILE  vol_state > 0.8  or  ATR > 3 % of price
TRENDING  persistence > 0.5  and  vol_state < 0.7
RANGING   everything else
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Sequence

import numpy as np

from data_loader.augmenter import efficiency_ratio
from shared.models import MarketSnapshot, Regime
from shared.utils import clamp

VOLATILE_STATE: Final[float] = 0.8
VOLATILE_ATR_PCT: Final[float] = 3.0
TREND_PERSISTENCE: Final[float] = 0.5
TREND_MAX_VOL: Final[float] = 0.7
SHORT_WIN: Final[int] = 10
LONG_WIN: Final[int] = 50
EFF_WIN: Final[int] = 20


@dataclass(frozen=True)
class RegimeReading:
    regime: Regime
    confidence: float
    vol_ratio: float
    vol_state: float
    persistence: float
    atr_pct: float


def _vol_ratio(closes: np.ndarray) -> float:
    if len(closes) < SHORT_WIN + 2:
        return 1.0
    rets = np.diff(np.log(closes))
    short = float(np.std(rets[-SHORT_WIN:]))
    long_ = float(np.std(rets[-LONG_WIN:]))
    return short / long_ if long_ > 0 else 1.0


def classify_regime(window: Sequence[MarketSnapshot], atr: float) -> RegimeReading:
    closes = np.asarray([s.price for s in window], dtype=float)
    price = closes[-1]
    ratio = _vol_ratio(closes)
    vol_state = clamp((ratio - 0.5) / 1.5, 0.0, 1.0)
    adx = window[-1].indicator("adx")
    persistence = max(efficiency_ratio(closes[-EFF_WIN:]), clamp(adx / 50.0, 0.0, 1.0))
    atr_pct = atr / price * 100 if price > 0 else 0.0

    if vol_state > VOLATILE_STATE or atr_pct > VOLATILE_ATR_PCT:
        regime, conf = Regime.VOLATILE, max(vol_state, clamp(atr_pct / VOLATILE_ATR_PCT, 0.0, 1.0))
    elif persistence > TREND_PERSISTENCE and vol_state < TREND_MAX_VOL:
        regime, conf = Regime.TRENDING, persistence
    else:
        regime, conf = Regime.RANGING, 1.0 - persistence
    return RegimeReading(regime, clamp(conf, 0.0, 1.0), ratio, vol_state, persistence, atr_pct)
