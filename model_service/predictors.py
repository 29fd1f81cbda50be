"""
predictors.py – the built-in, independently-failing ensemble members
--------------------------------------------------------------------
Each predictor reads the same schema-v1 FeatureVector and returns a
ModelPrediction: probability mass over {long, short} plus a confidence.

• `predict()` is plain synchronous code.
• `apredict()` is what the ensemble awaits under a deadline.  Cheap
  rule-based members run inline; members flagged `blocking` (e.g. the
  torch net) are pushed to a worker thread so the event loop never stalls.
"""

from __future__ import annotations

import asyncio
import math
from typing import List

from shared.models import FeatureVector, ModelPrediction
from shared.utils import clamp


def _scored(name: str, signal: float, confidence: float) -> ModelPrediction:
    """signal ∈ [-1, 1] → long/short mass; confidence clipped to [0, 1]."""
    s = clamp(signal, -1.0, 1.0)
    return ModelPrediction(name, long_score=(1 + s) / 2, short_score=(1 - s) / 2,
                           confidence=clamp(confidence, 0.0, 1.0))


class Predictor:
    name: str = "predictor"
    blocking: bool = False

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        raise NotImplementedError

    async def apredict(self, fv: FeatureVector) -> ModelPrediction:
        if self.blocking:
            return await asyncio.to_thread(self.predict, fv)
        return self.predict(fv)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class MomentumPredictor(Predictor):
    """Short/medium return plus fast-vs-slow EMA spread."""

    name = "momentum"

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        raw = 0.6 * fv.get("ret_5") + 0.3 * fv.get("ret_1") + 0.4 * fv.get("ema_spread")
        signal = math.tanh(raw)
        conf = 0.35 + 0.55 * abs(signal)
        return _scored(self.name, signal, conf)


class MeanReversionPredictor(Predictor):
    """Fades stretched RSI / Bollinger readings; stands aside in clean trends."""

    name = "mean_reversion"

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        stretch = 0.6 * fv.get("rsi") + 0.4 * fv.get("bb_percent_b")
        signal = -math.tanh(2.0 * stretch)
        trendiness = clamp(fv.get("efficiency"), 0.0, 1.0)
        conf = (0.3 + 0.6 * abs(signal)) * (1.0 - 0.6 * trendiness)
        return _scored(self.name, signal, conf)


class TrendPredictor(Predictor):
    """EMA structure weighted by directional persistence (efficiency / ADX)."""

    name = "trend"

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        structure = fv.get("ema_spread") + 0.5 * fv.get("venue_momentum") + 0.3 * fv.get("ema_slow_dev")
        persistence = max(clamp(fv.get("efficiency"), 0.0, 1.0), clamp(fv.get("adx"), 0.0, 1.0))
        signal = math.tanh(structure) * (0.5 + 0.5 * persistence)
        conf = 0.25 + 0.65 * persistence * min(1.0, abs(structure))
        return _scored(self.name, signal, conf)


class MicrostructurePredictor(Predictor):
    """Order imbalance and close-in-bar location, discounted by wide spreads."""

    name = "microstructure"

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        signal = math.tanh(1.5 * fv.get("order_imbalance") + 0.5 * fv.get("bar_position"))
        spread_penalty = clamp(fv.get("spread_bps") / 3.0, 0.0, 1.0)
        conf = (0.3 + 0.5 * abs(signal)) * (1.0 - 0.5 * spread_penalty)
        return _scored(self.name, signal, conf)


class VolumeFlowPredictor(Predictor):
    """Direction of the last move, trusted more when volume is above average."""

    name = "volume_flow"

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        surge = clamp(fv.get("volume_ratio"), -1.0, 3.0)
        move = math.tanh(3.0 * fv.get("ret_1"))
        signal = move * clamp(0.5 + surge / 2.0, 0.0, 1.0)
        conf = 0.3 + 0.4 * clamp(surge, 0.0, 1.0) * abs(move)
        return _scored(self.name, signal, conf)


def default_predictors() -> List[Predictor]:
    return [MomentumPredictor(), MeanReversionPredictor(), TrendPredictor(),
            MicrostructurePredictor(), VolumeFlowPredictor()]


def momentum_fallback(fv: FeatureVector) -> ModelPrediction:
    """Deterministic closed-form vote used when no ensemble member survives."""
    signal = math.tanh(fv.get("ret_5") + 0.5 * fv.get("ema_fast_dev"))
    return _scored("fallback", signal, min(0.5, 0.2 + 0.3 * abs(signal)))
