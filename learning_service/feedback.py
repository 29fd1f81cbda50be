"""
feedback.py – online learning from closed trades
================================================

Consumes TradeOutcomes from a queue and, per outcome:

(a) nudges each predictor’s weight toward predictors whose confidence
    pointed at the profitable side (EWMA score, bounded step per update)
(b) raises the minimum-confidence threshold after a run of losses and
    relaxes it after a run of wins, inside [max(min, phase floor), max]
(c) updates per-(regime, algorithm) trailing statistics
(d) advances the session RiskState and the learning phase

Every change is one whole-table swap on the ParameterStore, so readers
see either the old table or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Mapping, Optional, Tuple

from shared.config import ConfigStore, EngineConfig
from shared.logging import get_logger
from shared.models import RiskState, TradeOutcome
from shared.params import AlgoStats, EngineParameters, ParameterStore
from shared.utils import clamp
from trade_manager.risk import RiskBook

from .phases import Phase, PhaseMachine

log = get_logger("learning_service.feedback")

TRAIL_ALPHA = 0.2
SESSION_CHECK_SEC = 60.0


# ─── pure update rules ────────────────────────────────────────────────
def update_weights(params: EngineParameters, outcome: TradeOutcome,
                   cfg: EngineConfig) -> Tuple[Dict[str, float], Dict[str, float]]:
    """Returns (weights, performance) after one outcome."""
    weights = dict(params.weights)
    perf = dict(params.performance)
    decision = outcome.decision
    if decision is None or not weights or outcome.pnl == 0:
        return weights, perf

    profitable_side = outcome.direction if outcome.pnl > 0 else outcome.direction.opposite()
    for p in decision.predictions:
        if p.failed or p.producer not in weights:
            continue
        signed = p.confidence if p.direction is profitable_side else -p.confidence
        target = 0.5 + 0.5 * signed
        old = perf.get(p.producer, 0.5)
        perf[p.producer] = (1 - cfg.weight_alpha) * old + cfg.weight_alpha * target

    raw = {n: max(cfg.weight_floor, perf.get(n, 0.5)) for n in weights}
    total = sum(raw.values())
    goal = {n: v / total for n, v in raw.items()}

    moved = {}
    for n, w in weights.items():
        step = clamp(goal[n] - w, -cfg.weight_max_step, cfg.weight_max_step)
        moved[n] = max(cfg.weight_floor / len(weights), w + step)
    total = sum(moved.values())
    return {n: v / total for n, v in moved.items()}, perf


def update_threshold(current: float, risk: RiskState, cfg: EngineConfig,
                     floor: float) -> float:
    lo = max(cfg.threshold_min, floor)
    thr = current
    if risk.consecutive_losses >= cfg.loss_run:
        thr += cfg.threshold_step
    elif risk.consecutive_wins >= cfg.win_run:
        thr -= cfg.threshold_step
    return round(clamp(thr, lo, cfg.threshold_max), 6)


def update_trailing_stats(stats: Mapping[str, Mapping[str, AlgoStats]],
                          outcome: TradeOutcome) -> Dict[str, Dict[str, AlgoStats]]:
    out = {r: dict(a) for r, a in stats.items()}
    if outcome.regime is None or not outcome.algorithm:
        return out
    regime = outcome.regime.value
    old = out.get(regime, {}).get(outcome.algorithm, AlgoStats())
    r = outcome.r_multiple
    avg = r if old.trades == 0 else (1 - TRAIL_ALPHA) * old.avg_r + TRAIL_ALPHA * r
    out.setdefault(regime, {})[outcome.algorithm] = AlgoStats(
        trades=old.trades + 1, wins=old.wins + (1 if outcome.won else 0), avg_r=avg)
    return out


def learn(params: EngineParameters, outcome: TradeOutcome, risk: RiskState,
          cfg: EngineConfig, phases: PhaseMachine) -> EngineParameters:
    """Old table + one outcome → new table."""
    weights, perf = update_weights(params, outcome, cfg)
    record = params.record.add(outcome.pnl)
    phase: Phase = phases.resolve(params.phase, record, cfg.account_equity)
    return params.evolve(
        weights=weights,
        performance=perf,
        min_confidence=update_threshold(params.min_confidence, risk, cfg,
                                        phase.confidence_floor),
        trailing_stats=update_trailing_stats(params.trailing_stats, outcome),
        phase=phase.name,
        risk_limits=phase.limits,
        record=record,
    )


# ─── the loop ─────────────────────────────────────────────────────────
class FeedbackLoop:
    def __init__(self, params: ParameterStore, risk: RiskBook, config: ConfigStore,
                 phases: Optional[PhaseMachine] = None,
                 on_publish: Optional[Callable[[EngineParameters], None]] = None):
        self._params = params
        self._risk = risk
        self._config = config
        self.phases = phases or PhaseMachine()
        self._on_publish = on_publish
        self.queue: "asyncio.Queue[TradeOutcome]" = asyncio.Queue()
        self.processed = 0

    def submit(self, outcome: TradeOutcome) -> None:
        self.queue.put_nowait(outcome)

    def process(self, outcome: TradeOutcome) -> EngineParameters:
        if not outcome.filled:
            self.processed += 1
            log.info("%s %s never filled – lifecycle closed, nothing learned",
                     outcome.instrument, outcome.lifecycle_id)
            return self._params.current
        risk = self._risk.record(outcome)
        cfg = self._config.current
        old_thr = self._params.current.min_confidence
        new = self._params.swap(lambda old: learn(old, outcome, risk, cfg, self.phases))
        self.processed += 1
        log.info("%s %s %s pnl=%+.2f → losses=%d wins=%d threshold %.3f→%.3f phase=%s",
                 outcome.instrument, outcome.lifecycle_id, outcome.exit_reason.value,
                 outcome.pnl, risk.consecutive_losses, risk.consecutive_wins,
                 old_thr, new.min_confidence, new.phase)
        if self._on_publish is not None:
            self._on_publish(new)
        return new

    async def run(self) -> None:
        log.info("feedback loop up")
        while True:
            try:
                outcome = await asyncio.wait_for(self.queue.get(), timeout=SESSION_CHECK_SEC)
            except asyncio.TimeoutError:
                self._risk.roll()
                continue
            try:
                self.process(outcome)
            except Exception as exc:  # noqa: BLE001
                log.error("outcome %s not learned – %s", outcome.lifecycle_id, exc, exc_info=True)
            finally:
                self.queue.task_done()
