"""
ensemble.py – concurrent, deadline-bounded ensemble vote
========================================================

Every registered predictor is invoked concurrently with its own deadline.
Members that time out or raise are recorded as failed and dropped from
*this* aggregation only; the survivors’ weights are renormalised to sum
to 1.  The weight table itself is never touched here (see
learning_service.feedback).

    direction  = argmax(Σ wᵢ·scoreᵢ)        over {long, short}
    confidence = Σ wᵢ·confᵢ / Σ wᵢ          × data quality (× cold-start penalty)
    strength   = Σ wᵢ·(longᵢ − shortᵢ)      ∈ [-1, 1]

No survivors → deterministic momentum fallback tagged degraded.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from shared.config import ConfigStore, EngineConfig
from shared.errors import PredictorError
from shared.logging import get_logger
from shared.models import (
    Direction, EnsembleDecision, FeatureVector, ModelPrediction, Tier,
)
from shared.params import EngineParameters, ParameterStore
from shared.utils import clamp

from .predictors import Predictor, momentum_fallback

log = get_logger("model_service.ensemble")


def effective_weights(survivors: Sequence[ModelPrediction],
                      weights: Mapping[str, float]) -> Dict[str, float]:
    """Renormalise the stored weights over the survivors (equal split if all 0)."""
    raw = {p.producer: max(0.0, float(weights.get(p.producer, 0.0))) for p in survivors}
    total = sum(raw.values())
    if total <= 0:
        return {name: 1.0 / len(raw) for name in raw} if raw else {}
    return {name: w / total for name, w in raw.items()}


def classify_tier(direction: Direction, confidence: float, strength: float,
                  cfg: EngineConfig) -> Tier:
    if direction is Direction.HOLD:
        return Tier.HOLD
    if confidence >= cfg.strong_confidence and abs(strength) >= cfg.strong_strength:
        return Tier.STRONG
    if confidence >= cfg.hold_confidence and abs(strength) >= cfg.hold_margin:
        return Tier.WEAK
    return Tier.HOLD


def aggregate(fv: FeatureVector, predictions: Sequence[ModelPrediction],
              params: EngineParameters, cfg: EngineConfig,
              price: float = 0.0, atr: float = 0.0,
              timestamp: Optional[datetime] = None) -> EnsembleDecision:
    """Pure confidence-weighted vote over whatever predictions survived."""
    survivors = [p for p in predictions if not p.failed]
    degraded = len(survivors) < len(predictions)
    fallback = False

    if not survivors:
        fb = momentum_fallback(fv)
        survivors, degraded, fallback = [fb], True, True
        weights = {fb.producer: 1.0}
    else:
        weights = effective_weights(survivors, params.weights)

    long_mass = sum(weights[p.producer] * p.long_score for p in survivors)
    short_mass = sum(weights[p.producer] * p.short_score for p in survivors)
    confidence = sum(weights[p.producer] * p.confidence for p in survivors)
    strength = long_mass - short_mass

    if long_mass > short_mass:
        direction = Direction.LONG
    elif short_mass > long_mass:
        direction = Direction.SHORT
    else:
        direction = Direction.HOLD

    confidence *= fv.quality
    if fv.cold_start:
        confidence *= cfg.cold_start_penalty
    confidence = clamp(confidence, 0.0, 1.0)

    tier = classify_tier(direction, confidence, strength, cfg)
    if tier is Tier.HOLD:
        direction = Direction.HOLD

    all_preds = list(predictions) + ([survivors[0]] if fallback else [])
    return EnsembleDecision(
        instrument=fv.instrument,
        timestamp=timestamp or fv.timestamp,
        direction=direction,
        confidence=confidence,
        strength=strength,
        tier=tier,
        predictions=tuple(all_preds),
        weights=weights,
        degraded=degraded,
        fallback=fallback,
        data_quality=fv.quality,
        cold_start=fv.cold_start,
        price=price,
        atr=atr,
    )


class EnsemblePredictor:
    def __init__(self, predictors: Sequence[Predictor],
                 params: ParameterStore, config: ConfigStore):
        names = [p.name for p in predictors]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate predictor names: {names}")
        self.predictors: List[Predictor] = list(predictors)
        self._params = params
        self._config = config

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.predictors]

    async def _run_one(self, p: Predictor, fv: FeatureVector, deadline: float) -> ModelPrediction:
        t0 = time.perf_counter()
        try:
            pred = await asyncio.wait_for(p.apredict(fv), timeout=deadline)
            if not isinstance(pred, ModelPrediction):
                raise PredictorError(f"returned {type(pred).__name__}, not a ModelPrediction")
        except asyncio.TimeoutError:
            ms = (time.perf_counter() - t0) * 1000
            log.warning("%s predictor %s timed out after %.0f ms", fv.instrument, p.name, ms)
            return ModelPrediction.failure(p.name, "timeout", ms)
        except Exception as exc:  # noqa: BLE001
            ms = (time.perf_counter() - t0) * 1000
            log.warning("%s predictor %s failed – %s", fv.instrument, p.name, exc)
            return ModelPrediction.failure(p.name, f"{type(exc).__name__}: {exc}", ms)
        ms = (time.perf_counter() - t0) * 1000
        return replace(pred, producer=p.name, latency_ms=ms)

    async def predict(self, fv: FeatureVector, price: float = 0.0,
                      atr: float = 0.0) -> EnsembleDecision:
        cfg = self._config.current
        params = self._params.current
        version = self._params.version
        deadline = cfg.predictor_deadline_ms / 1000.0

        preds = await asyncio.gather(*(self._run_one(p, fv, deadline) for p in self.predictors))
        decision = aggregate(fv, preds, params, cfg, price=price, atr=atr)
        if decision.fallback:
            log.error("%s all %d predictors failed – momentum fallback", fv.instrument, len(preds))
        return replace(decision, params_version=version)
