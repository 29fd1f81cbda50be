#!/usr/bin/env python3
"""
decision_service.py – real-time decision engine (process entry point)
=====================================================================

Wires every component together and owns the per-instrument pipeline:

    venue line ─▶ gateway ─▶ handle() ─▶ instrument queue ─▶ process()

market_data
    cache → features → ensemble → levels → (exit checks | validator
    chain → go_long / go_short)
strategy_status / trade_entry / trade_completed
    position tracker (venue wins) → trailing start / stop → outcome →
    feedback loop
command_confirmation
    frees the dispatcher slot
smart_trailing_request
    immediate trailing evaluation

One consumer task per instrument serializes that instrument’s work;
different instruments never wait on each other.  Persistence and
status broadcast are fire-and-continue.

Run:  python -m decision_service.decision_service   (or `decision-engine`)
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set

import redis
import uvicorn

from data_loader.augmenter import atr_of, compute_features
from data_loader.loader import InstrumentInfo, SnapshotCache
from data_retainer.retainer import Recorder
from learning_service.feedback import FeedbackLoop
from learning_service.phases import PhaseMachine
from model_service.ensemble import EnsemblePredictor
from model_service.inference import load_torch_predictor
from model_service.predictors import Predictor, default_predictors
from shared.config import ConfigStore, EngineConfig
from shared.constants import SERVICE_NAME
from shared.errors import ConfigError
from shared.logging import get_logger
from shared.models import (
    EnsembleDecision, ExitReason, MarketSnapshot, Position, PositionPhase,
)
from shared.params import EngineParameters, ParameterStore
from shared.redis_client import heartbeat, set_paused, trading_paused
from shared.utils import utcnow
from trade_executor.dispatcher import CommandDispatcher, Transport
from trade_executor.gateway import VenueGateway
from trade_executor.protocol import (
    Command, CommandConfirmation, CommandType, Heartbeat, InboundMessage,
    MarketData, Registration, StrategyStatus, TradeCompleted, TradeEntry,
    TrailingRequest,
)
from trade_manager.manager import StatusBroadcaster, create_app
from trade_manager.risk import RiskBook
from trade_manager.tracker import PositionTracker, Transition
from trailing_service.engine import SmartTrailingEngine, TrailingScheduler, TrailingUpdate

from .rules import hold_expired, is_reversal, trade_levels
from .validators import ChainResult, standard_chain

log = get_logger("decision_service")

QUEUE_MAX = 1000
HEARTBEAT_SEC = 10.0


# ─── ENGINE ───────────────────────────────────────────────────────────
class DecisionEngine:
    def __init__(self, config: ConfigStore, params: ParameterStore, *,
                 predictors: Optional[Sequence[Predictor]] = None,
                 recorder: Optional[Recorder] = None,
                 transport: Optional[Transport] = None,
                 phases: Optional[PhaseMachine] = None,
                 clock: Callable[[], datetime] = utcnow):
        cfg = config.current
        self.config = config
        self.params = params
        self.recorder = recorder
        self._clock = clock

        self.cache = SnapshotCache(cfg.feature_window)
        self.risk = RiskBook(clock)
        self.tracker = PositionTracker(config, self._point_value, clock)
        self.ensemble = EnsemblePredictor(
            list(predictors) if predictors is not None else default_predictors(),
            params, config)
        self.chain = standard_chain(config, params, self.tracker.open_count, clock)
        self.trailing = TrailingScheduler(
            SmartTrailingEngine(config, params, tick_size=self._tick_size),
            self.tracker, self.cache, config, self._on_trail)
        self.gateway: Optional[VenueGateway] = None
        if transport is None:
            self.gateway = VenueGateway(config, self.handle)
            transport = self.gateway.send
        self.dispatcher = CommandDispatcher(transport, config)
        self.feedback = FeedbackLoop(params, self.risk, config, phases,
                                     on_publish=self._on_params)
        self.broadcaster = StatusBroadcaster()

        self._queues: Dict[str, "asyncio.Queue[InboundMessage]"] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._reversals: Dict[str, int] = {}
        self.dropped = 0

    # ─── instrument metadata ──────────────────────────────────────────
    def _point_value(self, instrument: str) -> float:
        return self.cache.info(instrument).point_value

    def _tick_size(self, instrument: str) -> float:
        return self.cache.info(instrument).tick_size

    # ─── inbound routing (called from the gateway read loop) ──────────
    async def handle(self, msg: InboundMessage) -> None:
        if isinstance(msg, Heartbeat):
            return
        if isinstance(msg, Registration):
            self.cache.register(InstrumentInfo(msg.instrument, msg.tick_size, msg.point_value))
            return
        q = self._queue(msg.instrument)
        if isinstance(msg, MarketData) and q.full():
            self.dropped += 1
            log.warning("%s queue full – market data dropped (%d so far)",
                        msg.instrument, self.dropped)
            return
        await q.put(msg)

    def _queue(self, instrument: str) -> "asyncio.Queue[InboundMessage]":
        q = self._queues.get(instrument)
        if q is None:
            q = self._queues[instrument] = asyncio.Queue(maxsize=QUEUE_MAX)
            self._workers[instrument] = asyncio.create_task(
                self._consume(instrument, q), name=f"instrument:{instrument}")
        return q

    def queue_depths(self) -> Dict[str, int]:
        return {k: q.qsize() for k, q in sorted(self._queues.items())}

    async def _consume(self, instrument: str, q: "asyncio.Queue[InboundMessage]") -> None:
        while True:
            msg = await q.get()
            try:
                await self.process(msg)
            except Exception as exc:  # noqa: BLE001
                log.error("%s %s – %s", instrument, type(msg).__name__, exc, exc_info=True)
            finally:
                q.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been processed."""
        await asyncio.gather(*(q.join() for q in list(self._queues.values())))

    async def process(self, msg: InboundMessage) -> None:
        if isinstance(msg, MarketData):
            await self.on_market_data(msg.snapshot)
        elif isinstance(msg, StrategyStatus):
            await self._after(await self.tracker.reconcile(msg))
        elif isinstance(msg, TradeEntry):
            await self._after(await self.tracker.on_trade_entry(msg))
        elif isinstance(msg, TradeCompleted):
            await self._after(await self.tracker.on_trade_completed(msg))
        elif isinstance(msg, CommandConfirmation):
            await self.dispatcher.acknowledge(msg)
        elif isinstance(msg, TrailingRequest):
            await self.trailing.tick(msg.instrument)

    # ─── market data → decision ───────────────────────────────────────
    async def on_market_data(self, snap: MarketSnapshot) -> Optional[EnsembleDecision]:
        inst = snap.instrument
        if not self.cache.append(snap):
            return None
        if self.recorder:
            self.recorder.snapshot(snap)
        await self.tracker.mark_price(inst, snap.price)

        cfg = self.config.current
        window = self.cache.window(inst)
        fv = compute_features(window, cfg.min_window)
        atr = atr_of(window)
        decision = await self.ensemble.predict(fv, price=snap.price, atr=atr)
        levels = trade_levels(decision.direction, snap.price, atr, cfg, self._tick_size(inst))
        if levels is not None:
            decision = decision.with_levels(levels)

        if self.recorder:
            self.recorder.decision(decision)
        self.broadcaster.publish(inst, decision=decision)
        log.debug("%s %s conf=%.3f tier=%s%s", inst, decision.direction.value,
                  decision.confidence, decision.tier.value,
                  " degraded" if decision.degraded else "")

        pos = self.tracker.get(inst)
        if pos.is_live:
            await self._manage(pos, decision)
        elif pos.is_flat:
            await self.act_on_decision(decision)
        return decision

    async def _manage(self, pos: Position, decision: EnsembleDecision) -> None:
        """Exit checks for a live position: reversal streak, max hold time."""
        if pos.phase is not PositionPhase.OPEN:
            return
        inst = pos.instrument
        cfg = self.config.current
        streak = self._reversals.get(inst, 0) + 1 if is_reversal(decision, pos) else 0
        self._reversals[inst] = streak
        if streak >= cfg.reversal_streak:
            log.info("%s %d strong %s signal(s) against %s – reversal exit", inst,
                     streak, decision.direction.value, pos.direction.value)
            await self.close_position(inst, ExitReason.REVERSAL)
        elif hold_expired(pos, self._clock(), cfg.max_hold_min):
            log.info("%s held %s past %.0f min – time exit", inst, pos.lifecycle_id,
                     cfg.max_hold_min)
            await self.close_position(inst, ExitReason.TIME)

    async def act_on_decision(self, decision: EnsembleDecision) -> ChainResult:
        """Validator chain → optimistic OPENING → go_long / go_short."""
        inst = decision.instrument
        self.risk.roll()
        result = self.chain.validate(decision, self.tracker.get(inst), self.risk.current)
        if not result.passed:
            if decision.actionable:
                log.info("%s %s %.2f rejected – %s", inst, decision.direction.value,
                         decision.confidence, "; ".join(result.reasons))
            return result

        qty = self.config.current.default_quantity
        levels = decision.levels
        t = await self.tracker.begin_open(decision, levels, qty)
        if not t.changed:
            return result
        await self._after(t)
        await self.dispatcher.submit(Command(
            CommandType.entry_for(decision.direction), inst,
            quantity=qty,
            price=decision.price,
            stop_loss=levels.stop,
            target=levels.target1,
            reason=f"{decision.tier.value} conf={decision.confidence:.2f}",
        ))
        return result

    async def close_position(self, instrument: str, reason: ExitReason) -> bool:
        t = await self.tracker.begin_close(instrument, reason)
        if not t.changed:
            return False
        self._reversals.pop(instrument, None)
        await self._after(t)
        pos = t.after
        await self.dispatcher.submit(Command(
            CommandType.CLOSE, instrument,
            quantity=abs(pos.size),
            price=pos.last_price,
            reason=reason.value,
        ))
        return True

    # ─── tracker transitions ──────────────────────────────────────────
    async def _after(self, t: Transition) -> None:
        inst = t.instrument
        trail_closed, final = False, None
        if t.closed:
            final = self.trailing.stop(inst)
            self._reversals.pop(inst, None)
            trail_closed = True
        if t.outcome is not None:
            outcome = t.outcome
            if final is not None and final.lifecycle_id == outcome.lifecycle_id:
                outcome = replace(outcome, regime=final.regime, algorithm=final.algorithm)
            self.feedback.submit(outcome)
            if self.recorder:
                self.recorder.outcome(outcome)
        if t.opened and t.after.is_live:
            self.trailing.start(t.after)
        if t.changed:
            if self.recorder:
                self.recorder.position(t.after)
            self.broadcaster.publish(inst, position=t.after, trailing_closed=trail_closed)

    async def _on_trail(self, pos: Position, upd: TrailingUpdate) -> None:
        inst = pos.instrument
        stop = upd.state.stop
        t = await self.tracker.apply_stop(inst, stop)
        if not t.changed:
            return
        await self.dispatcher.submit(Command(
            CommandType.UPDATE_STOP, inst,
            quantity=abs(t.after.size),
            price=t.after.last_price,
            stop_loss=stop,
            target=t.after.target1,
            reason=f"trail {upd.state.regime.value}/{upd.state.algorithm}",
        ))
        if self.recorder:
            self.recorder.position(t.after)
        self.broadcaster.publish(inst, position=t.after, trailing=upd.state)

    def _on_params(self, params: EngineParameters) -> None:
        if self.recorder:
            self.recorder.parameters(params)

    # ─── operator ─────────────────────────────────────────────────────
    def set_paused(self, flag: bool, reason: str = "") -> None:
        cfg = self.config.current
        if cfg.paused != flag:
            self.config.update(paused=flag)
            log.warning("trading %s%s", "PAUSED" if flag else "resumed",
                        f" – {reason}" if reason else "")
        if cfg.persist:
            set_paused(flag)

    async def _heartbeat(self) -> None:
        while True:
            cfg = self.config.current
            if cfg.persist:
                await asyncio.to_thread(
                    heartbeat, SERVICE_NAME, paused=cfg.paused,
                    open_positions=self.tracker.open_count(),
                    venue_connected=self.gateway.connected if self.gateway else False)
                flag = await asyncio.to_thread(trading_paused)
                if flag != self.config.current.paused:
                    self.config.update(paused=flag)
                    log.warning("pause flag in store is %s – trading %s",
                                flag, "PAUSED" if flag else "resumed")
            await asyncio.sleep(HEARTBEAT_SEC)

    # ─── lifecycle ────────────────────────────────────────────────────
    def _spawn(self, coro, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self) -> None:
        self._spawn(self.feedback.run(), "feedback")
        if self.recorder:
            self._spawn(self.recorder.run(), "recorder")
        self._spawn(self._heartbeat(), "heartbeat")
        if self.gateway is not None:
            await self.gateway.start()
        log.info("decision engine up – %d predictor(s): %s",
                 len(self.ensemble.names), ", ".join(self.ensemble.names))

    async def close(self) -> None:
        if self.gateway is not None:
            await self.gateway.close()
        await self.trailing.close()
        await self.dispatcher.close()
        tasks: List[asyncio.Task] = [*self._workers.values(), *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        log.info("decision engine stopped")


# ─── STARTUP ──────────────────────────────────────────────────────────
def initial_parameters(names: Sequence[str], cfg: EngineConfig,
                       phases: PhaseMachine,
                       stored: Optional[EngineParameters] = None) -> EngineParameters:
    """Stored table if there is one (weights re-aligned to `names`), else defaults."""
    if stored is None:
        first = phases.initial
        return EngineParameters.initial(names, cfg.threshold_initial,
                                        phase=first.name, risk_limits=first.limits)
    if set(stored.weights) == set(names):
        return stored
    share = 1.0 / len(names)
    raw = {n: stored.weights.get(n, share) for n in names}
    total = sum(raw.values()) or 1.0
    log.warning("stored weights cover %s, predictors are %s – re-aligned",
                sorted(stored.weights), sorted(names))
    return stored.evolve(weights={n: w / total for n, w in raw.items()},
                         performance={n: stored.performance.get(n, 0.5) for n in names})


async def serve(cfg: EngineConfig) -> None:
    config = ConfigStore(cfg)
    recorder = Recorder() if cfg.persist else None

    predictors: List[Predictor] = default_predictors()
    neural = load_torch_predictor(cfg.model_path)
    if neural is not None:
        predictors.append(neural)
    names = [p.name for p in predictors]

    phases = PhaseMachine()
    stored = None
    if recorder is not None:
        try:
            stored = await asyncio.to_thread(recorder.load_parameters)
        except redis.RedisError as exc:
            log.warning("stored parameters unavailable – %s", exc)
    params = ParameterStore(initial_parameters(names, cfg, phases, stored))

    engine = DecisionEngine(config, params, predictors=predictors,
                            recorder=recorder, phases=phases)
    if recorder is not None and cfg.symbols:
        await asyncio.to_thread(engine.cache.bootstrap, cfg.symbols, recorder.load_window)
    await engine.start()

    try:
        if cfg.api_port:
            server = uvicorn.Server(uvicorn.Config(
                create_app(engine), host=cfg.listen_host, port=cfg.api_port,
                log_level="warning"))
            await server.serve()
        else:
            await asyncio.Event().wait()
    finally:
        await engine.close()


def main() -> None:
    try:
        cfg = EngineConfig.from_env()
    except ConfigError as exc:
        log.critical("invalid configuration – %s", exc)
        raise SystemExit(2) from exc
    try:
        asyncio.run(serve(cfg))
    except KeyboardInterrupt:
        log.info("interrupted")


if __name__ == "__main__":
    main()
