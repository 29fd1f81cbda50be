from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import numpy as np
import pytest

from conftest import T0, make_window
from data_loader.augmenter import atr_of
from data_loader.loader import SnapshotCache
from shared.config import ConfigStore, EngineConfig
from shared.models import (
    Direction, MarketSnapshot, Position, PositionPhase, Regime,
)
from shared.params import AlgoStats
from trade_executor.protocol import TradeEntry
from trade_manager.tracker import PositionTracker
from trailing_service.algorithms import Proposal, TrailingAlgorithm, default_algorithms
from trailing_service.engine import (
    REGIME_CANDIDATES, SmartTrailingEngine, TrailingScheduler, select_algorithm,
)
from trailing_service.regime import classify_regime


def _random_walk(n=150, seed=7, start=100.0):
    rng = np.random.default_rng(seed)
    prices = start + np.cumsum(rng.normal(0.05, 0.4, n))
    return [
        MarketSnapshot("ES", T0 + timedelta(seconds=i), float(p), volume=100.0,
                       high=float(p) + 0.2, low=float(p) - 0.2)
        for i, p in enumerate(prices)
    ]


def _long(entry, stop):
    return Position("ES", size=1, entry_price=entry, stop_price=stop,
                    phase=PositionPhase.OPEN, opened_at=T0, lifecycle_id="ES-1",
                    initial_stop=stop)


class Silent(TrailingAlgorithm):
    def __init__(self, name):
        self.name = name

    def propose(self, ctx):
        return None


class Stub(TrailingAlgorithm):
    def __init__(self, name, distance_atr=0.5, confidence=0.3):
        self.name = name
        self._dist = distance_atr
        self._conf = confidence

    def propose(self, ctx):
        return Proposal(self.name, ctx.at_distance(self._dist * ctx.atr), self._conf)


def test_select_algorithm_prefers_learned_performance():
    assert select_algorithm(Regime.TRENDING, {}) == REGIME_CANDIDATES[Regime.TRENDING][0]
    stats = {"profit_protection": AlgoStats(trades=20, wins=15, avg_r=1.2),
             "trend_strength": AlgoStats(trades=20, wins=5, avg_r=-0.4)}
    assert select_algorithm(Regime.TRENDING, stats) == "profit_protection"
    assert select_algorithm(Regime.RANGING, {}) == "support_resistance"


def test_stop_never_loosens_and_moves_are_capped(config, params):
    cfg = config.current
    engine = SmartTrailingEngine(config, params)
    snaps = _random_walk()
    pos = _long(snaps[0].price, snaps[0].price - 1.5)
    state = None
    for i in range(30, len(snaps)):
        window = snaps[:i]
        upd = engine.evaluate(pos, window, state, now=window[-1].timestamp)
        state = upd.state
        if upd.accepted:
            assert upd.state.stop > pos.stop_price
            assert upd.state.stop - pos.stop_price <= cfg.trailing_max_move_atr * atr_of(window) + 1e-9
            assert upd.state.stop < window[-1].price
            pos = replace(pos, stop_price=upd.state.stop)
        else:
            assert upd.state.stop == pos.stop_price
    assert state.updates == len(snaps) - 30


def test_short_position_stop_only_moves_down(config, params):
    engine = SmartTrailingEngine(config, params)
    falling = make_window(n=60, start=110.0, step=-0.1, atr=0.5)
    pos = replace(_long(110.0, 111.0), size=-1)
    upd = engine.evaluate(pos, falling)
    assert upd.accepted
    assert upd.state.stop < 111.0
    assert upd.state.stop > falling[-1].price


def test_low_confidence_proposal_keeps_current_stop(config, params):
    algos = {name: Stub(name, confidence=0.3) for name in default_algorithms()}
    engine = SmartTrailingEngine(config, params, algorithms=algos)
    win = make_window(n=40)
    upd = engine.evaluate(_long(100.0, 98.0), win)
    assert not upd.accepted
    assert upd.state.stop == 98.0
    assert "below floor" in upd.reason


def test_fallback_distance_when_algorithm_has_nothing(params):
    config = ConfigStore(EngineConfig(persist=False, trailing_min_confidence=0.4))
    algos = {name: Silent(name) for name in default_algorithms()}
    engine = SmartTrailingEngine(config, params, algorithms=algos)
    win = make_window(n=40, atr=1.0)
    upd = engine.evaluate(replace(_long(100.0, 98.0), stop_price=None), win)
    assert upd.accepted
    assert upd.state.confidence == 0.5
    assert upd.state.stop == pytest.approx(win[-1].price - 1.5)


def test_stop_is_rounded_to_tick(config, params):
    algos = {name: Stub(name, distance_atr=0.33, confidence=0.9) for name in default_algorithms()}
    engine = SmartTrailingEngine(config, params, algorithms=algos, tick_size=lambda _i: 0.25)
    win = make_window(n=40, atr=1.0)
    upd = engine.evaluate(_long(100.0, 102.4), win)
    assert upd.accepted
    assert upd.state.stop == pytest.approx(103.0)          # 102.9 capped, then rounded


def test_regime_classification():
    trending = classify_regime(make_window(n=60, step=0.05), atr=0.3)
    assert trending.regime is Regime.TRENDING
    volatile = classify_regime(make_window(n=60), atr=10.0)
    assert volatile.regime is Regime.VOLATILE
    chop = [replace(s, price=100.0 + (0.3 if i % 2 else -0.3))
            for i, s in enumerate(make_window(n=60))]
    assert classify_regime(chop, atr=0.5).regime is Regime.RANGING


async def test_scheduler_tick_start_and_stop(config, params):
    cache = SnapshotCache(200)
    for snap in make_window(n=40, atr=1.0):
        cache.append(snap)
    tracker = PositionTracker(config)
    opened = await tracker.on_trade_entry(TradeEntry("ES", T0, Direction.LONG, 100.0, 1, stop_loss=98.0))
    on_update = AsyncMock()
    sched = TrailingScheduler(SmartTrailingEngine(config, params), tracker, cache, config, on_update)

    sched.start(opened.after)
    assert sched.active() == ["ES"]
    upd = await sched.tick("ES")
    assert upd is not None
    assert sched.state("ES") == upd.state
    if upd.accepted:
        on_update.assert_awaited_once()

    final = sched.stop("ES")
    assert final == upd.state
    assert sched.active() == []
    assert sched.state("ES") is None
    assert await sched.tick("ES") is None
    await sched.close()


@pytest.mark.parametrize("atr", [0.0, float("nan")])
def test_no_volatility_estimate_keeps_current_stop(config, params, monkeypatch, atr):
    monkeypatch.setattr("trailing_service.engine.atr_of", lambda _w: atr)
    algos = {name: Stub(name, confidence=0.9) for name in default_algorithms()}
    engine = SmartTrailingEngine(config, params, algorithms=algos)
    win = make_window(n=40, atr=1.0)
    for pos in (_long(100.0, 98.0), replace(_long(100.0, 98.0), stop_price=None)):
        upd = engine.evaluate(pos, win)
        assert not upd.accepted
        assert upd.state.stop == pos.stop_price
        assert upd.reason == "no volatility estimate"
