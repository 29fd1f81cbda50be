"""
engine.py – smart trailing stop: regime → algorithm → guarded proposal
=====================================================================

1. classify the regime of the instrument’s recent window
2. `select_algorithm(regime, stats)` – pure: regime candidates ranked by
   learned per-(regime, algorithm) performance
3. the algorithm proposes (stop, confidence)
4. accepted only if confidence ≥ floor AND strictly more favourable than
   the current stop; otherwise the current stop stays
5. the move is capped at `trailing_max_move_atr × ATR` per update and
   never crosses the current price

`TrailingScheduler` owns one asyncio task per open position; the task
ticks on a fixed interval regardless of market data and is cancelled
the moment the position closes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

from data_loader.augmenter import atr_of
from data_loader.loader import SnapshotCache
from shared.config import ConfigStore
from shared.logging import get_logger
from shared.models import MarketSnapshot, Position, Regime, TrailingState
from shared.params import AlgoStats, ParameterStore
from shared.utils import round_tick, utcnow
from trade_manager.tracker import PositionTracker

from .algorithms import Proposal, TrailingAlgorithm, TrailingContext, default_algorithms
from .regime import RegimeReading, classify_regime

log = get_logger("trailing_service")

# preference order inside each regime (ties in learned score keep this order)
REGIME_CANDIDATES: Mapping[Regime, Tuple[str, ...]] = {
    Regime.TRENDING: ("trend_strength", "volatility_adaptive", "momentum_adaptive", "profit_protection"),
    Regime.VOLATILE: ("volatility_adaptive", "profit_protection", "momentum_adaptive"),
    Regime.RANGING:  ("support_resistance", "profit_protection", "momentum_adaptive"),
}
FALLBACK_ATR = 1.5
FALLBACK_CONFIDENCE = 0.5
CROSS_GUARD_ATR = 0.25


def select_algorithm(regime: Regime, stats: Mapping[str, AlgoStats]) -> str:
    """Best-scoring candidate for `regime`; untried ones score a neutral 0."""
    candidates = REGIME_CANDIDATES[regime]
    ranked = sorted(enumerate(candidates),
                    key=lambda ic: (-stats.get(ic[1], AlgoStats()).score, ic[0]))
    return ranked[0][1]


@dataclass(frozen=True)
class TrailingUpdate:
    state: TrailingState
    accepted: bool
    proposed: Optional[float]
    reason: str = ""


class SmartTrailingEngine:
    def __init__(self, config: ConfigStore, params: ParameterStore,
                 algorithms: Optional[Mapping[str, TrailingAlgorithm]] = None,
                 tick_size: Callable[[str], float] = lambda _i: 0.0):
        self._config = config
        self._params = params
        self.algorithms: Dict[str, TrailingAlgorithm] = dict(algorithms or default_algorithms())
        self._tick = tick_size

    def _propose(self, name: str, ctx: TrailingContext) -> Proposal:
        algo = self.algorithms.get(name)
        prop = algo.propose(ctx) if algo else None
        if prop is None:
            prop = Proposal(name, ctx.at_distance(FALLBACK_ATR * ctx.atr), FALLBACK_CONFIDENCE)
        return prop

    def evaluate(self, position: Position, window: Sequence[MarketSnapshot],
                 state: Optional[TrailingState] = None,
                 now: Optional[datetime] = None) -> TrailingUpdate:
        now = now or utcnow()
        cfg = self._config.current
        price = window[-1].price
        atr = atr_of(window)
        reading: RegimeReading = classify_regime(window, atr)
        stats = self._params.current.trailing_stats.get(reading.regime.value, {})
        name = select_algorithm(reading.regime, stats)
        ctx = TrailingContext(position, window, price, atr, reading)
        prop = self._propose(name, ctx)

        sign = position.direction.sign
        current = position.stop_price
        counter = (state.updates if state else 0) + 1

        def _result(accepted: bool, stop: Optional[float], reason: str) -> TrailingUpdate:
            st = TrailingState(position.instrument, position.lifecycle_id, reading.regime,
                               name, stop, prop.confidence, counter, now)
            return TrailingUpdate(st, accepted, prop.stop, reason)

        if sign == 0:
            return _result(False, current, "no direction")
        if not atr > 0:
            return _result(False, current, "no volatility estimate")
        if prop.confidence < cfg.trailing_min_confidence:
            return _result(False, current, f"confidence {prop.confidence:.2f} below floor")

        stop = prop.stop
        if current is not None:
            move = (stop - current) * sign
            if move <= 0:
                return _result(False, current, "not more favourable")
            stop = current + sign * min(move, cfg.trailing_max_move_atr * atr)
        # a stop at / through the market would be an instant exit
        if (price - stop) * sign <= 0:
            stop = price - sign * CROSS_GUARD_ATR * atr
        stop = round_tick(stop, self._tick(position.instrument))
        if current is not None and (stop - current) * sign <= 0:
            return _result(False, current, "not more favourable after caps")

        log.info("%s trail %s/%s %.5f → %.5f (conf %.2f)", position.instrument,
                 reading.regime.value, name, current if current is not None else float("nan"),
                 stop, prop.confidence)
        return _result(True, stop, "accepted")


class TrailingScheduler:
    """One periodic task per live position; `stop()` discards its state."""

    def __init__(self, engine: SmartTrailingEngine, tracker: PositionTracker,
                 cache: SnapshotCache, config: ConfigStore,
                 on_update: Callable[[Position, TrailingUpdate], Awaitable[None]]):
        self._engine = engine
        self._tracker = tracker
        self._cache = cache
        self._config = config
        self._on_update = on_update
        self._tasks: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, TrailingState] = {}
        self._lifecycle: Dict[str, Optional[str]] = {}

    def state(self, instrument: str) -> Optional[TrailingState]:
        return self._states.get(instrument)

    def states(self) -> Dict[str, TrailingState]:
        return dict(self._states)

    def active(self) -> list:
        return sorted(self._tasks)

    def start(self, position: Position) -> None:
        inst = position.instrument
        if inst in self._tasks and self._lifecycle.get(inst) == position.lifecycle_id:
            return
        self.stop(inst)
        self._lifecycle[inst] = position.lifecycle_id
        self._tasks[inst] = asyncio.create_task(self._loop(inst, position.lifecycle_id),
                                                name=f"trail:{inst}")
        log.info("%s trailing started (%s)", inst, position.lifecycle_id)

    def stop(self, instrument: str) -> Optional[TrailingState]:
        task = self._tasks.pop(instrument, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._lifecycle.pop(instrument, None)
        state = self._states.pop(instrument, None)
        if task is not None:
            log.info("%s trailing stopped after %d update(s)", instrument,
                     state.updates if state else 0)
        return state

    async def tick(self, instrument: str) -> Optional[TrailingUpdate]:
        pos = self._tracker.get(instrument)
        if not pos.is_live or pos.lifecycle_id != self._lifecycle.get(instrument):
            return None
        window = self._cache.window(instrument)
        if not window:
            return None
        upd = self._engine.evaluate(pos, window, self._states.get(instrument))
        self._states[instrument] = upd.state
        if upd.accepted:
            await self._on_update(pos, upd)
        return upd

    async def _loop(self, instrument: str, lifecycle_id: Optional[str]) -> None:
        while True:
            await asyncio.sleep(self._config.current.trailing_interval_sec)
            if self._lifecycle.get(instrument) != lifecycle_id:
                return
            try:
                await self.tick(instrument)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                log.error("%s trailing tick failed – %s", instrument, exc, exc_info=True)

    async def close(self) -> None:
        tasks = list(self._tasks.values())
        for inst in list(self._tasks):
            self.stop(inst)
        await asyncio.gather(*tasks, return_exceptions=True)
