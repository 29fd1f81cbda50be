"""
augmenter.py – v1 feature schema (strict, deterministic)
--------------------------------------------------------
• Produces *exactly* the columns of `FEATURE_SCHEMA_V1`, in order, from the
  rolling snapshot window of one instrument (oldest → newest).
• Pure function of the window: no wall clock, no globals, so identical
  history → identical vector.
• Every value is normalised and clipped to ±CLIP; NaN / ±inf become 0 and
  flag the vector as `sanitized`.
• Fewer than `min_window` snapshots → still a vector, flagged `cold_start`.
"""

from __future__ import annotations
import math, warnings
from typing import Dict, Final, List, Sequence

import numpy as np
import pandas as pd
from ta.momentum   import RSIIndicator
from ta.trend      import EMAIndicator
from ta.volatility import AverageTrueRange, BollingerBands

from shared.models import FeatureVector, MarketSnapshot

warnings.filterwarnings("ignore", category=RuntimeWarning)

# ───── constants ──────────────────────────────────────────────────────
SCHEMA_VERSION: Final[str] = "v1"
CLIP:           Final[float] = 3.0
RSI_WIN:        Final[int] = 14
ATR_WIN:        Final[int] = 14
BB_WIN:         Final[int] = 20
EFF_WIN:        Final[int] = 20

FEATURE_SCHEMA_V1: List[str] = [
 # price / returns
 "ret_1","ret_5","ret_20","volatility_10","volatility_ratio","efficiency",
 # technical
 "rsi","ema_fast_dev","ema_slow_dev","ema_spread","bb_percent_b","bb_width",
 "atr_pct","adx",
 # venue-computed indicators
 "venue_rsi","venue_momentum",
 # microstructure
 "spread_bps","order_imbalance","volume_ratio","bar_position",
 # temporal
 "hour_sin","hour_cos",
 # bookkeeping
 "quality",
]


# ───── helpers ────────────────────────────────────────────────────────
def _frame(window: Sequence[MarketSnapshot]) -> pd.DataFrame:
    return pd.DataFrame({
        "close":  [s.price for s in window],
        "high":   [s.bar_high for s in window],
        "low":    [s.bar_low for s in window],
        "volume": [s.volume for s in window],
    })


def atr_of(window: Sequence[MarketSnapshot]) -> float:
    """
    Best available ATR for the newest snapshot: the venue’s own value when
    sent, else ta’s AverageTrueRange, else mean absolute price change.
    """
    if not window:
        return 0.0
    venue = window[-1].indicator("atr")
    if math.isfinite(venue) and venue > 0:
        return venue
    df = _frame(window)
    if len(df) > ATR_WIN:
        atr = AverageTrueRange(df["high"], df["low"], df["close"], ATR_WIN, fillna=True)
        val = float(atr.average_true_range().iloc[-1])
        if math.isfinite(val) and val > 0:
            return val
    if len(df) > 1:
        val = float(df["close"].diff().abs().iloc[1:].mean())
        if math.isfinite(val) and val > 0:
            return val
    return window[-1].price * 0.001            # 0.1 % of price as last resort


def efficiency_ratio(closes: np.ndarray) -> float:
    """Kaufman efficiency: net move / path length (0 = noise, 1 = straight line)."""
    if len(closes) < 2:
        return 0.0
    path = float(np.abs(np.diff(closes)).sum())
    return abs(float(closes[-1] - closes[0])) / path if path > 0 else 0.0


def _ret(close: pd.Series, n: int) -> float:
    if len(close) <= n:
        n = len(close) - 1
    if n <= 0:
        return 0.0
    return float(np.log(close.iloc[-1] / close.iloc[-1 - n]))


# ───── main augmentation ──────────────────────────────────────────────
def compute_features(window: Sequence[MarketSnapshot], min_window: int = 20) -> FeatureVector:
    if not window:
        raise ValueError("compute_features needs at least one snapshot")
    snap = window[-1]
    df = _frame(window)
    close = df["close"]
    n = len(df)

    logret = np.log(close / close.shift(1)).dropna()
    vol10 = float(logret.tail(10).std()) if len(logret) > 1 else 0.0
    vol50 = float(logret.tail(50).std()) if len(logret) > 1 else 0.0

    rsi  = RSIIndicator(close, RSI_WIN, fillna=True).rsi().iloc[-1]
    ema8 = EMAIndicator(close, 8, fillna=True).ema_indicator().iloc[-1]
    ema21 = EMAIndicator(close, 21, fillna=True).ema_indicator().iloc[-1]
    bb   = BollingerBands(close, BB_WIN, 2, fillna=True)
    bb_hi, bb_lo = bb.bollinger_hband().iloc[-1], bb.bollinger_lband().iloc[-1]

    price = snap.price
    atr = atr_of(window)
    avg_vol = float(df["volume"].tail(20).mean())

    bid_sz, ask_sz = snap.indicator("bid_size"), snap.indicator("ask_size")
    bar_rng = snap.bar_high - snap.bar_low

    venue_rsi = snap.indicators.get("rsi")
    ema_a, ema_b = snap.indicators.get("ema5"), snap.indicators.get("ema21")

    hour = snap.timestamp.hour + snap.timestamp.minute / 60.0

    raw: Dict[str, float] = {
        "ret_1":            _ret(close, 1) * 100,
        "ret_5":            _ret(close, 5) * 100,
        "ret_20":           _ret(close, 20) * 100,
        "volatility_10":    vol10 * 100,
        "volatility_ratio": (vol10 / vol50 - 1.0) if vol50 > 0 else 0.0,
        "efficiency":       efficiency_ratio(close.tail(EFF_WIN).to_numpy()),
        "rsi":              (rsi - 50.0) / 50.0,
        "ema_fast_dev":     (price / ema8 - 1.0) * 100,
        "ema_slow_dev":     (price / ema21 - 1.0) * 100,
        "ema_spread":       (ema8 - ema21) / atr if atr > 0 else 0.0,
        "bb_percent_b":     (price - bb_lo) / (bb_hi - bb_lo) * 2 - 1 if bb_hi > bb_lo else 0.0,
        "bb_width":         (bb_hi - bb_lo) / price * 100,
        "atr_pct":          atr / price * 100,
        "adx":              snap.indicator("adx") / 50.0,
        "venue_rsi":        (float(venue_rsi) - 50.0) / 50.0 if venue_rsi is not None else 0.0,
        "venue_momentum":   (float(ema_a) - float(ema_b)) / atr
                            if ema_a is not None and ema_b is not None and atr > 0 else 0.0,
        "spread_bps":       snap.spread / price * 1e4,
        "order_imbalance":  (bid_sz - ask_sz) / (bid_sz + ask_sz) if bid_sz + ask_sz > 0 else 0.0,
        "volume_ratio":     snap.volume / avg_vol - 1.0 if avg_vol > 0 else 0.0,
        "bar_position":     (price - snap.bar_low) / bar_rng * 2 - 1 if bar_rng > 0 else 0.0,
        "hour_sin":         math.sin(2 * math.pi * hour / 24.0),
        "hour_cos":         math.cos(2 * math.pi * hour / 24.0),
        "quality":          snap.quality,
    }

    # ─── final cleanup & order ───────────────────────────────────────────
    sanitized = False
    values: List[float] = []
    for name in FEATURE_SCHEMA_V1:
        v = float(raw[name])
        if not math.isfinite(v):
            v, sanitized = 0.0, True
        values.append(min(CLIP, max(-CLIP, v)))

    cold = n < min_window
    quality = snap.quality * (0.8 if sanitized else 1.0)
    return FeatureVector(
        instrument=snap.instrument,
        timestamp=snap.timestamp,
        schema_version=SCHEMA_VERSION,
        names=tuple(FEATURE_SCHEMA_V1),
        values=tuple(values),
        cold_start=cold,
        sanitized=sanitized,
        quality=quality,
    )
