"""
tracker.py – authoritative, reconciled position per instrument
==============================================================

State machine (one per instrument)::

    FLAT ──begin_open──▶ OPENING ──fill / status──▶ OPEN ──begin_close──▶ CLOSING
      ▲                     │                          │                     │
      └──── grace expired ──┘◀──── venue flat ─────────┴─────────────────────┘

Two independent inputs drive it: local commands (optimistic, immediate)
and venue reports (authoritative, delayed).  `reconcile()` runs on every
`strategy_status`; the venue always wins on size and direction.  A live
position the venue reports flat is force-closed with a synthetic
outcome tagged `reconciled`.

All mutation for one instrument happens under that instrument’s
asyncio.Lock.  Each call returns a `Transition`; at most one
TradeOutcome is ever produced per lifecycle id.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from shared.config import ConfigStore
from shared.logging import get_logger
from shared.models import (
    Direction, EnsembleDecision, ExitReason, Position, PositionPhase,
    TradeLevels, TradeOutcome,
)
from shared.utils import utcnow
from trade_executor.protocol import StrategyStatus, TradeCompleted, TradeEntry

log = get_logger("trade_manager.tracker")

CLOSED_MEMORY = 10_000


@dataclass(frozen=True)
class Transition:
    instrument: str
    before: Position
    after: Position
    opened: bool = False                  # became live → start trailing
    closed: bool = False                  # left live → stop trailing
    outcome: Optional[TradeOutcome] = None
    corrected: bool = False               # venue overrode local belief
    note: str = ""

    @property
    def changed(self) -> bool:
        return self.before != self.after


class PositionTracker:
    def __init__(self, config: ConfigStore,
                 point_value: Callable[[str], float] = lambda _i: 1.0,
                 clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._point_value = point_value
        self._clock = clock
        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._exit_reason: Dict[str, ExitReason] = {}
        self._closed: "OrderedDict[str, None]" = OrderedDict()
        self._seq = itertools.count(1)

    # ─── read side ────────────────────────────────────────────────────
    def get(self, instrument: str) -> Position:
        return self._positions.get(instrument) or Position.flat(instrument)

    def positions(self) -> List[Position]:
        return [self._positions[k] for k in sorted(self._positions)]

    def open_count(self) -> int:
        return sum(1 for p in self._positions.values() if not p.is_flat)

    def lock(self, instrument: str) -> asyncio.Lock:
        if instrument not in self._locks:
            self._locks[instrument] = asyncio.Lock()
        return self._locks[instrument]

    def restore(self, positions: List[Position]) -> None:
        """Startup only: seed from persistence; the first status tick corrects it."""
        for p in positions:
            if not p.is_flat:
                self._positions[p.instrument] = p

    # ─── helpers ──────────────────────────────────────────────────────
    def _new_id(self, instrument: str, now: datetime) -> str:
        return f"{instrument}-{now:%Y%m%d%H%M%S}-{next(self._seq)}"

    def _set(self, before: Position, after: Position, **kw) -> Transition:
        self._positions[after.instrument] = after
        if after.is_flat:
            self._exit_reason.pop(after.instrument, None)
        return Transition(after.instrument, before, after, **kw)

    def _outcome(self, pos: Position, exit_price: float, reason: ExitReason,
                 now: datetime, pnl: Optional[float] = None,
                 filled: bool = True) -> Optional[TradeOutcome]:
        """Build the lifecycle’s single outcome (None if it already closed)."""
        lid = pos.lifecycle_id
        if lid is None or lid in self._closed:
            log.warning("%s lifecycle %s already closed – no second outcome",
                        pos.instrument, lid)
            return None
        self._closed[lid] = None
        while len(self._closed) > CLOSED_MEMORY:
            self._closed.popitem(last=False)
        if pnl is None:
            pnl = (exit_price - pos.entry_price) * pos.size * self._point_value(pos.instrument)
        risk = abs(pos.entry_price - pos.initial_stop) if pos.initial_stop is not None else 0.0
        return TradeOutcome(
            lifecycle_id=lid,
            instrument=pos.instrument,
            direction=pos.direction,
            size=abs(pos.size),
            entry_price=pos.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            exit_reason=reason,
            opened_at=pos.opened_at,
            closed_at=now,
            decision=pos.decision,
            initial_risk=risk,
            filled=filled,
        )

    def _close(self, pos: Position, exit_price: float, reason: ExitReason,
               now: datetime, pnl: Optional[float] = None, filled: bool = True,
               **kw) -> Transition:
        outcome = self._outcome(pos, exit_price, reason, now, pnl, filled)
        flat = Position.flat(pos.instrument, now)
        log.info("%s %s → CLOSE %s @ %.5f (pnl %+.2f)", pos.instrument, pos.lifecycle_id,
                 reason.value, exit_price, outcome.pnl if outcome else 0.0,
                 extra={"ctx": {"lifecycle_id": pos.lifecycle_id, "reason": reason.value,
                                "r_multiple": outcome.r_multiple if outcome else None}})
        return self._set(pos, replace(flat, last_price=exit_price),
                         closed=pos.is_live, outcome=outcome, **kw)

    # ─── local (optimistic) inputs ────────────────────────────────────
    async def begin_open(self, decision: EnsembleDecision, levels: TradeLevels,
                         quantity: float) -> Transition:
        inst = decision.instrument
        async with self.lock(inst):
            pos = self.get(inst)
            if not pos.is_flat:
                return Transition(inst, pos, pos, note=f"not flat ({pos.phase.value})")
            now = self._clock()
            new = Position(
                instrument=inst,
                size=decision.direction.sign * abs(quantity),
                entry_price=levels.entry,
                stop_price=levels.stop,
                target1=levels.target1,
                target2=levels.target2,
                phase=PositionPhase.OPENING,
                opened_at=now,
                lifecycle_id=self._new_id(inst, now),
                decision=decision,
                initial_stop=levels.stop,
                last_price=decision.price or levels.entry,
                updated_at=now,
            )
            log.info("%s %s → OPENING %s x%s", inst, new.lifecycle_id,
                     decision.direction.value, abs(quantity))
            return self._set(pos, new)

    async def begin_close(self, instrument: str, reason: ExitReason) -> Transition:
        async with self.lock(instrument):
            pos = self.get(instrument)
            if pos.phase is not PositionPhase.OPEN:
                return Transition(instrument, pos, pos, note=f"cannot close from {pos.phase.value}")
            self._exit_reason[instrument] = reason
            return self._set(pos, replace(pos, phase=PositionPhase.CLOSING,
                                          updated_at=self._clock()))

    async def apply_stop(self, instrument: str, stop: float) -> Transition:
        """Adopt `stop` only if it reduces risk; protection never loosens."""
        async with self.lock(instrument):
            pos = self.get(instrument)
            if not pos.is_live:
                return Transition(instrument, pos, pos, note="not live")
            cur = pos.stop_price
            if cur is not None and (stop - cur) * pos.direction.sign <= 0:
                return Transition(instrument, pos, pos, note="not more favourable")
            return self._set(pos, replace(pos, stop_price=stop, updated_at=self._clock()))

    async def mark_price(self, instrument: str, price: float) -> None:
        async with self.lock(instrument):
            pos = self._positions.get(instrument)
            if pos is not None and not pos.is_flat:
                self._positions[instrument] = replace(pos, last_price=price)

    # ─── venue (authoritative) inputs ─────────────────────────────────
    async def on_trade_entry(self, msg: TradeEntry) -> Transition:
        async with self.lock(msg.instrument):
            pos = self.get(msg.instrument)
            now = self._clock()
            side = msg.direction if msg.direction is not Direction.HOLD else pos.direction
            if side is Direction.HOLD:
                return Transition(msg.instrument, pos, pos, note="fill without direction")
            size = side.sign * abs(msg.quantity)
            stop = msg.stop_loss if msg.stop_loss is not None else pos.stop_price
            if pos.phase is PositionPhase.OPENING and pos.direction is side:
                new = replace(pos, phase=PositionPhase.OPEN, size=size,
                              entry_price=msg.entry_price,
                              stop_price=stop,
                              initial_stop=stop if stop is not None else pos.initial_stop,
                              target1=msg.target1 or pos.target1,
                              target2=msg.target2 or pos.target2,
                              last_price=msg.entry_price, updated_at=now)
                log.info("%s %s → OPEN filled @ %.5f", msg.instrument, pos.lifecycle_id, msg.entry_price)
                return self._set(pos, new, opened=True)
            if pos.is_live:
                return Transition(msg.instrument, pos, pos, note="fill while already live")
            new = Position(instrument=msg.instrument, size=size,
                           entry_price=msg.entry_price, stop_price=stop,
                           target1=msg.target1, target2=msg.target2,
                           phase=PositionPhase.OPEN, opened_at=msg.timestamp,
                           lifecycle_id=self._new_id(msg.instrument, now),
                           initial_stop=stop, last_price=msg.entry_price, updated_at=now)
            log.warning("%s venue-initiated entry adopted (%s x%s)",
                        msg.instrument, side.value, abs(msg.quantity))
            return self._set(pos, new, opened=True, corrected=True)

    async def on_trade_completed(self, msg: TradeCompleted) -> Transition:
        async with self.lock(msg.instrument):
            pos = self.get(msg.instrument)
            if not pos.is_live:
                return Transition(msg.instrument, pos, pos, note="completion while not live")
            reason = msg.exit_reason
            if reason is ExitReason.MANUAL and msg.instrument in self._exit_reason:
                reason = self._exit_reason[msg.instrument]
            exit_px = msg.exit_price or pos.last_price or pos.entry_price
            return self._close(pos, exit_px, reason, self._clock(), msg.pnl)

    async def reconcile(self, status: StrategyStatus) -> Transition:
        """Correct local state from one venue status tick (venue wins)."""
        inst = status.instrument
        async with self.lock(inst):
            pos = self.get(inst)
            now = self._clock()
            px = status.current_price or pos.last_price or status.entry_price or pos.entry_price
            ext = status.size

            # ── venue flat ────────────────────────────────────────────
            if ext == 0:
                if pos.is_live:
                    reason = self._exit_reason.get(inst, ExitReason.RECONCILED) \
                        if pos.phase is PositionPhase.CLOSING else ExitReason.RECONCILED
                    if reason is ExitReason.RECONCILED:
                        log.warning("%s divergence: local %s %+g, venue flat – force close",
                                    inst, pos.phase.value, pos.size)
                    return self._close(pos, px, reason, now, corrected=True)
                if pos.phase is PositionPhase.OPENING and pos.opened_at is not None:
                    age = (now - pos.opened_at).total_seconds()
                    if age > self._config.current.opening_grace_sec:
                        log.warning("%s %s never filled after %.0fs – back to FLAT",
                                    inst, pos.lifecycle_id, age)
                        return self._close(pos, pos.entry_price, ExitReason.RECONCILED, now,
                                           pnl=0.0, filled=False, corrected=True)
                return Transition(inst, pos, pos)

            side = Direction.from_size(ext)

            # ── venue open, local not live ────────────────────────────
            if not pos.is_live:
                keep = pos.phase is PositionPhase.OPENING and pos.direction is side
                entry = status.entry_price or (pos.entry_price if keep else px)
                stop = status.stop_loss if status.stop_loss is not None else \
                    (pos.stop_price if keep else None)
                if not keep:
                    log.warning("%s divergence: local %s, venue %s %+g – adopting",
                                inst, pos.phase.value, side.value, ext)
                new = Position(
                    instrument=inst, size=ext, entry_price=entry, stop_price=stop,
                    target1=status.target1 or (pos.target1 if keep else None),
                    target2=status.target2 or (pos.target2 if keep else None),
                    phase=PositionPhase.OPEN,
                    opened_at=pos.opened_at if keep else status.timestamp,
                    lifecycle_id=pos.lifecycle_id if keep else self._new_id(inst, now),
                    decision=pos.decision if keep else None,
                    initial_stop=pos.initial_stop if keep else stop,
                    last_price=px, updated_at=now,
                )
                return self._set(pos, new, opened=True, corrected=not keep)

            # ── venue open on the other side: old lifecycle is over ───
            if side is not pos.direction:
                log.warning("%s divergence: local %s, venue %s – closing old lifecycle",
                            inst, pos.direction.value, side.value)
                closed = self._close(pos, px, ExitReason.RECONCILED, now)
                new = Position(
                    instrument=inst, size=ext, entry_price=status.entry_price or px,
                    stop_price=status.stop_loss, target1=status.target1,
                    target2=status.target2, phase=PositionPhase.OPEN,
                    opened_at=status.timestamp, lifecycle_id=self._new_id(inst, now),
                    initial_stop=status.stop_loss, last_price=px, updated_at=now,
                )
                self._positions[inst] = new
                return Transition(inst, pos, new, opened=True, closed=True,
                                  outcome=closed.outcome, corrected=True)

            # ── same side: size, entry, stop ──────────────────────────
            changes: Dict[str, object] = {"last_price": px}
            corrected = False
            if abs(ext - pos.size) > 1e-9:
                log.warning("%s divergence: size local %+g, venue %+g – venue wins",
                            inst, pos.size, ext)
                changes["size"] = ext
                corrected = True
            if status.entry_price and abs(status.entry_price - pos.entry_price) > 1e-9:
                changes["entry_price"] = status.entry_price
                corrected = True
            vs = status.stop_loss
            if vs is not None and (pos.stop_price is None
                                   or (vs - pos.stop_price) * side.sign > 0):
                changes["stop_price"] = vs
            new = replace(pos, **changes)
            if new != pos:
                new = replace(new, updated_at=now)
            return self._set(pos, new, corrected=corrected)
