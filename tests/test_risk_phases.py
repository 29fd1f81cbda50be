from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from learning_service.phases import PHASES, Phase, PhaseMachine
from shared.models import Direction, ExitReason, RiskState, TradeOutcome
from shared.params import RiskLimits, TrackRecord
from trade_manager.risk import RiskBook, apply_outcome


def _outcome(pnl, closed=T0):
    return TradeOutcome("ES-1", "ES", Direction.LONG, 1, 100.0, 100.0, pnl, ExitReason.MANUAL,
                        closed - timedelta(minutes=1), closed)


def test_apply_outcome_counts_streaks():
    s = RiskState(session_date=T0.date())
    s = apply_outcome(s, _outcome(-10.0))
    s = apply_outcome(s, _outcome(-5.0))
    assert s.consecutive_losses == 2 and s.consecutive_wins == 0
    s = apply_outcome(s, _outcome(20.0))
    assert s.consecutive_losses == 0 and s.consecutive_wins == 1
    assert s.daily_pnl == pytest.approx(5.0)
    assert s.trade_count == 3
    assert s.last_trade_at["ES"] == T0


def test_session_rolls_forward_only():
    book = RiskBook(clock=lambda: T0)
    book.record(_outcome(-50.0))
    assert not book.roll(T0 - timedelta(days=1))
    assert book.current.trade_count == 1
    assert book.roll(T0 + timedelta(days=1))
    assert book.current.trade_count == 0
    assert book.current.session_date == (T0 + timedelta(days=1)).date()


def test_outcome_on_a_new_day_starts_a_fresh_session():
    book = RiskBook(clock=lambda: T0)
    book.record(_outcome(-50.0))
    state = book.record(_outcome(-20.0, closed=T0 + timedelta(days=1)))
    assert state.trade_count == 1
    assert state.daily_pnl == pytest.approx(-20.0)


def test_operator_reset():
    book = RiskBook(clock=lambda: T0)
    book.record(_outcome(-50.0))
    assert book.reset().trade_count == 0


def _record(trades, win_rate=0.6, win=30.0, loss=20.0):
    rec = TrackRecord()
    wins = int(trades * win_rate)
    for i in range(trades):
        rec = rec.add(win if i < wins else -loss)
    return rec


def test_phase_advances_with_trade_count():
    machine = PhaseMachine()
    assert machine.resolve("DISCOVERY", TrackRecord(), 25000).name == "DISCOVERY"
    assert machine.resolve("DISCOVERY", _record(50), 25000).name == "FILTERING"
    assert machine.resolve("FILTERING", _record(150), 25000).name == "OPTIMIZING"
    assert machine.resolve("OPTIMIZING", _record(250), 25000).name == "REFINING"


def test_production_needs_performance_and_can_be_lost():
    machine = PhaseMachine()
    good = _record(300, win_rate=0.6)
    assert machine.resolve("REFINING", good, 25000).name == "PRODUCTION"
    poor = _record(300, win_rate=0.4)
    assert machine.resolve("PRODUCTION", poor, 25000).name == "REFINING"
    assert machine.get("PRODUCTION").confidence_floor == 0.75
    assert machine.get("nonsense") is machine.initial


def test_phase_limits_tighten():
    floors = [p.confidence_floor for p in PHASES]
    assert floors == sorted(floors)
    assert PHASES[0].limits == RiskLimits(3000.0, 7, 20)
    with pytest.raises(ValueError):
        PhaseMachine([Phase("LATE", 10, 0.5, RiskLimits())])
