from __future__ import annotations

import asyncio

import pytest

from conftest import make_window
from data_loader.augmenter import compute_features
from model_service.ensemble import EnsemblePredictor, aggregate, classify_tier, effective_weights
from model_service.predictors import Predictor, default_predictors
from shared.config import ConfigStore, EngineConfig
from shared.models import Direction, ModelPrediction, Tier
from shared.params import EngineParameters, ParameterStore


class FixedPredictor(Predictor):
    def __init__(self, name, long_score=0.9, confidence=0.8, delay=0.0, error=None):
        self.name = name
        self._long = long_score
        self._conf = confidence
        self._delay = delay
        self._error = error

    def predict(self, fv):
        return ModelPrediction(self.name, self._long, 1 - self._long, self._conf)

    async def apredict(self, fv):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        return self.predict(fv)


def _ensemble(members, deadline_ms=50):
    config = ConfigStore(EngineConfig(persist=False, predictor_deadline_ms=deadline_ms))
    params = ParameterStore(EngineParameters.initial([m.name for m in members], 0.65))
    return EnsemblePredictor(members, params, config)


@pytest.fixture
def fv():
    return compute_features(make_window(n=40))


async def test_two_of_five_timeouts_renormalise_survivors(fv):
    members = [FixedPredictor(f"fast{i}") for i in range(3)] + \
              [FixedPredictor(f"slow{i}", delay=1.0) for i in range(2)]
    decision = await _ensemble(members).predict(fv, price=104.0, atr=1.0)

    assert decision.degraded
    assert not decision.fallback
    assert set(decision.weights) == {"fast0", "fast1", "fast2"}
    assert sum(decision.weights.values()) == pytest.approx(1.0)
    failed = [p for p in decision.predictions if p.failed]
    assert len(decision.predictions) == 5
    assert {p.producer for p in failed} == {"slow0", "slow1"}
    assert all(p.error == "timeout" for p in failed)
    assert decision.direction is Direction.LONG
    assert decision.confidence == pytest.approx(0.8 * fv.quality)


async def test_all_failures_use_the_momentum_fallback(fv):
    members = [FixedPredictor(f"bad{i}", error=RuntimeError("boom")) for i in range(3)]
    decision = await _ensemble(members).predict(fv)
    assert decision.fallback
    assert decision.degraded
    assert decision.weights == {"fallback": 1.0}
    assert decision.confidence <= 0.5
    assert 0.0 <= decision.confidence <= 1.0


async def test_params_version_is_stamped(fv):
    ens = _ensemble([FixedPredictor("a"), FixedPredictor("b")])
    ens._params.swap(lambda p: p.evolve(min_confidence=0.7))
    decision = await ens.predict(fv)
    assert decision.params_version == ens._params.version


async def test_builtin_members_give_bounded_decision(fv):
    names = [p.name for p in default_predictors()]
    assert len(set(names)) == len(names)
    decision = await _ensemble(default_predictors(), deadline_ms=500).predict(fv, price=104.0)
    assert 0.0 <= decision.confidence <= 1.0
    assert -1.0 <= decision.strength <= 1.0
    assert decision.direction in (Direction.LONG, Direction.SHORT, Direction.HOLD)
    if decision.tier is Tier.HOLD:
        assert decision.direction is Direction.HOLD


def test_duplicate_member_names_rejected():
    with pytest.raises(ValueError):
        _ensemble([FixedPredictor("x"), FixedPredictor("x")])


def test_effective_weights_split_equally_when_all_zero():
    preds = [ModelPrediction("a"), ModelPrediction("b")]
    assert effective_weights(preds, {"a": 0.0, "b": 0.0}) == {"a": 0.5, "b": 0.5}
    assert effective_weights(preds, {"a": 3.0, "b": 1.0}) == {"a": 0.75, "b": 0.25}


def test_weak_split_vote_is_hold(fv, cfg):
    params = EngineParameters.initial(["up", "down"], 0.65)
    preds = [ModelPrediction("up", 0.9, 0.1, 0.3), ModelPrediction("down", 0.1, 0.9, 0.3)]
    decision = aggregate(fv, preds, params, cfg)
    assert decision.direction is Direction.HOLD
    assert decision.tier is Tier.HOLD


def test_cold_start_penalises_confidence(cfg):
    cold = compute_features(make_window(n=5))
    params = EngineParameters.initial(["a"], 0.65)
    decision = aggregate(cold, [ModelPrediction("a", 0.9, 0.1, 0.8)], params, cfg)
    assert decision.cold_start
    assert decision.confidence == pytest.approx(0.8 * cold.quality * cfg.cold_start_penalty)


def test_tier_thresholds(cfg):
    assert classify_tier(Direction.LONG, 0.75, 0.6, cfg) is Tier.STRONG
    assert classify_tier(Direction.LONG, 0.5, 0.2, cfg) is Tier.WEAK
    assert classify_tier(Direction.SHORT, 0.3, 0.9, cfg) is Tier.HOLD
    assert classify_tier(Direction.HOLD, 0.9, 0.9, cfg) is Tier.HOLD


class NonePredictor(FixedPredictor):
    async def apredict(self, fv):
        return None


async def test_malformed_output_counts_as_failure(fv):
    members = [FixedPredictor("a"), NonePredictor("b")]
    decision = await _ensemble(members).predict(fv, price=104.0, atr=1.0)
    assert decision.degraded
    assert not decision.fallback
    failed = [p for p in decision.predictions if p.failed]
    assert [p.producer for p in failed] == ["b"]
    assert "ModelPrediction" in failed[0].error
