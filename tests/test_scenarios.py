"""End-to-end engine flows with a mocked venue transport."""
from __future__ import annotations

import json
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import T0, make_window
from decision_service.decision_service import DecisionEngine, initial_parameters
from learning_service.phases import PhaseMachine
from model_service.predictors import Predictor
from shared.config import ConfigStore, EngineConfig
from shared.models import Direction, ExitReason, ModelPrediction, Position, PositionPhase, Tier
from shared.params import EngineParameters, ParameterStore
from trade_executor.protocol import (
    CommandConfirmation, MarketData, Registration, StrategyStatus, TradeCompleted, TradeEntry,
    TrailingRequest,
)
from trailing_service.algorithms import Proposal, TrailingAlgorithm, default_algorithms


class FixedPredictor(Predictor):
    def __init__(self, name, long_score=0.9, confidence=0.82):
        self.name = name
        self.long_score = long_score
        self.confidence = confidence

    def predict(self, fv):
        return ModelPrediction(self.name, self.long_score, 1 - self.long_score, self.confidence)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def members():
    return [FixedPredictor(n) for n in ("momentum", "trend", "volatility")]


@pytest.fixture
async def engine(members, clock):
    config = ConfigStore(EngineConfig(persist=False, api_port=0))
    params = ParameterStore(EngineParameters.initial([m.name for m in members], 0.65))
    eng = DecisionEngine(config, params, predictors=members, transport=AsyncMock(),
                         clock=clock)
    yield eng
    await eng.close()


def _sent(engine):
    """Every command written to the venue, decoded."""
    transport = engine.dispatcher._transport
    return [json.loads(c.args[0]) for c in transport.await_args_list]


def _prime(engine, n=25):
    """Fill the window with n-1 bars and return the n-th for on_market_data."""
    bars = make_window(n=n, atr=1.0)
    for s in bars[:-1]:
        assert engine.cache.append(s)
    return bars[-1]


def _more(n, after, start):
    return make_window(n=n, start=start, atr=1.0, t0=after + timedelta(seconds=1))


async def _go_long(engine):
    last = _prime(engine)
    decision = await engine.on_market_data(last)
    return last, decision


# ─── entry ────────────────────────────────────────────────────────────
async def test_strong_long_signal_sends_go_long_with_atr_levels(engine):
    last, decision = await _go_long(engine)
    assert decision.direction is Direction.LONG
    assert decision.tier is Tier.STRONG
    assert decision.confidence == pytest.approx(0.82)

    (cmd,) = _sent(engine)
    assert cmd["type"] == "command"
    assert cmd["command"] == "go_long"
    assert cmd["instrument"] == "ES"
    assert cmd["quantity"] == 1
    assert cmd["stop_loss"] == pytest.approx(last.price - 1.5)
    assert cmd["target"] == pytest.approx(last.price + 3.0)

    pos = engine.tracker.get("ES")
    assert pos.phase is PositionPhase.OPENING
    assert pos.size == 1
    assert engine.broadcaster.latest["ES"]["position"]["phase"] == "OPENING"


async def test_below_threshold_sends_nothing(engine, members):
    for m in members:
        m.confidence = 0.6
    await _go_long(engine)
    assert _sent(engine) == []
    assert engine.tracker.get("ES").is_flat


async def test_paused_engine_sends_nothing(engine):
    engine.set_paused(True, "test")
    await _go_long(engine)
    assert _sent(engine) == []


async def test_opening_position_blocks_second_entry(engine):
    last, _ = await _go_long(engine)
    nxt = _more(1, last.timestamp, last.price + 0.1)[0]
    await engine.on_market_data(nxt)
    assert len(_sent(engine)) == 1


async def test_registered_tick_size_rounds_levels(engine):
    await engine.handle(Registration("ES", T0, tick_size=0.25, point_value=50.0))
    assert engine.queue_depths() == {}
    assert engine.cache.info("ES").tick_size == 0.25
    last, decision = await _go_long(engine)
    assert last.price == pytest.approx(102.4)
    assert decision.levels.stop == pytest.approx(101.0)
    assert decision.levels.target1 == pytest.approx(105.5)


# ─── lifecycle ────────────────────────────────────────────────────────
async def test_unfilled_entry_returns_to_flat_after_grace(engine, clock):
    await _go_long(engine)
    clock.now = T0 + timedelta(seconds=11)
    await engine.process(StrategyStatus("ES", clock.now, 0.0))
    assert engine.tracker.get("ES").is_flat
    assert engine.feedback.queue.qsize() == 1
    outcome = engine.feedback.queue.get_nowait()
    assert outcome.exit_reason is ExitReason.RECONCILED
    assert not outcome.filled
    before = engine.params.version
    engine.feedback.process(outcome)
    assert engine.params.version == before
    assert engine.risk.current.trade_count == 0


async def test_fill_then_venue_flat_yields_one_outcome(engine):
    last, _ = await _go_long(engine)
    await engine.process(TradeEntry("ES", T0, Direction.LONG, last.price, 1, stop_loss=last.price - 1.5))
    assert engine.tracker.get("ES").phase is PositionPhase.OPEN
    assert engine.trailing.active() == ["ES"]

    flat = StrategyStatus("ES", T0, 0.0, current_price=last.price + 1.0)
    await engine.process(flat)
    await engine.process(flat)

    assert engine.tracker.get("ES").is_flat
    assert engine.trailing.active() == []
    assert engine.feedback.queue.qsize() == 1
    outcome = engine.feedback.queue.get_nowait()
    assert outcome.exit_reason is ExitReason.RECONCILED
    assert outcome.pnl == pytest.approx(1.0)
    assert outcome.decision is not None


async def test_reversal_streak_closes_position(engine, members):
    last, _ = await _go_long(engine)
    await engine.process(CommandConfirmation("ES", T0, "go_long"))
    await engine.process(TradeEntry("ES", T0, Direction.LONG, last.price, 1))

    for m in members:
        m.long_score = 0.1
    bars = _more(3, last.timestamp, last.price - 0.1)
    for s in bars[:2]:
        await engine.on_market_data(s)
        assert engine.tracker.get("ES").phase is PositionPhase.OPEN
    await engine.on_market_data(bars[2])

    assert engine.tracker.get("ES").phase is PositionPhase.CLOSING
    cmd = _sent(engine)[-1]
    assert cmd["command"] == "close_position"
    assert cmd["reason"] == "reversal"
    assert cmd["quantity"] == 1

    await engine.process(TradeCompleted("ES", T0, exit_price=bars[2].price))
    outcome = engine.feedback.queue.get_nowait()
    assert outcome.exit_reason is ExitReason.REVERSAL
    assert engine.tracker.get("ES").is_flat


async def test_handle_routes_through_instrument_queue(engine):
    bars = make_window(n=25, atr=1.0)
    for s in bars:
        await engine.handle(MarketData(s))
    await engine.drain()
    assert engine.queue_depths() == {"ES": 0}
    assert engine.broadcaster.latest["ES"]["decision"]["direction"] == "long"
    assert len(_sent(engine)) == 1


# ─── startup ──────────────────────────────────────────────────────────
def test_initial_parameters_defaults_and_realignment():
    cfg = EngineConfig(persist=False)
    phases = PhaseMachine()
    fresh = initial_parameters(["a", "b"], cfg, phases)
    assert fresh.weights == {"a": 0.5, "b": 0.5}
    assert fresh.min_confidence == cfg.threshold_initial
    assert fresh.phase == phases.initial.name

    stored = EngineParameters(weights={"a": 0.6, "b": 0.4}, performance={"a": 0.7, "b": 0.5})
    assert initial_parameters(["a", "b"], cfg, phases, stored) is stored

    grown = initial_parameters(["a", "b", "c"], cfg, phases, stored)
    assert set(grown.weights) == {"a", "b", "c"}
    assert sum(grown.weights.values()) == pytest.approx(1.0)
    assert grown.weights["a"] > grown.weights["b"]
    assert grown.performance["c"] == 0.5


# ─── risk ─────────────────────────────────────────────────────────────
class TightTrail(TrailingAlgorithm):
    def __init__(self, name):
        self.name = name

    def propose(self, ctx):
        return Proposal(self.name, ctx.at_distance(0.5 * ctx.atr), 0.9)


async def test_tripped_breaker_blocks_entries_but_keeps_trailing(engine):
    last, decision = await _go_long(engine)
    await engine.process(CommandConfirmation("ES", T0, "go_long"))
    first_stop = last.price - 1.5
    await engine.process(TradeEntry("ES", T0, Direction.LONG, last.price, 1, stop_loss=first_stop))
    engine.risk.swap(lambda s: replace(s, daily_pnl=-5000.0, consecutive_losses=9, trade_count=99))
    res = engine.chain.validate(decision, Position.flat("ES"), engine.risk.current)
    assert "circuit_breaker" in {f.gate for f in res.failures}

    engine.trailing._engine.algorithms = {n: TightTrail(n) for n in default_algorithms()}
    for s in _more(5, last.timestamp, last.price + 0.1):
        assert engine.cache.append(s)
    await engine.process(TrailingRequest("ES", T0))

    pos = engine.tracker.get("ES")
    assert pos.phase is PositionPhase.OPEN
    assert pos.stop_price == pytest.approx(first_stop + 0.5)
    cmd = _sent(engine)[-1]
    assert cmd["command"] == "update_stop"
    assert cmd["stop_price"] == pytest.approx(pos.stop_price)
