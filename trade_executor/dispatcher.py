"""
dispatcher.py – at most one in-flight command per instrument
============================================================

• `submit(cmd)` sends immediately when the instrument’s slot is free.
• While a command is unacknowledged, newer requests wait in a single
  *pending* slot: the most recent replaces any older pending one, which
  is dropped (never executed late).
• A `command_confirmation` from the venue frees the slot; so does the
  per-command timeout, after which the command is considered lost.
• The socket write itself is wrapped in the shared RetryPolicy.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional

from shared.config import ConfigStore
from shared.errors import DispatchError
from shared.logging import get_logger
from shared.retry import RetryPolicy

from .protocol import Command, CommandConfirmation, encode

log = get_logger("trade_executor.dispatcher")

Transport = Callable[[bytes], Awaitable[None]]


@dataclass
class _Slot:
    inflight: Optional[Command] = None
    pending: Optional[Command] = None
    timer: Optional[asyncio.Task] = None


class CommandDispatcher:
    def __init__(self, transport: Transport, config: ConfigStore,
                 retry: Optional[RetryPolicy] = None):
        self._transport = transport
        self._config = config
        self._retry = retry or RetryPolicy.from_config(config.current)
        self._slots: Dict[str, _Slot] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._seq = itertools.count(1)
        self.stats: Dict[str, int] = {"sent": 0, "acked": 0, "lost": 0,
                                      "dropped": 0, "failed": 0}

    # ─── read side ────────────────────────────────────────────────────
    def in_flight(self, instrument: str) -> Optional[Command]:
        slot = self._slots.get(instrument)
        return slot.inflight if slot else None

    def pending(self, instrument: str) -> Optional[Command]:
        slot = self._slots.get(instrument)
        return slot.pending if slot else None

    def _lock(self, instrument: str) -> asyncio.Lock:
        if instrument not in self._locks:
            self._locks[instrument] = asyncio.Lock()
        return self._locks[instrument]

    # ─── public API ───────────────────────────────────────────────────
    async def submit(self, cmd: Command) -> str:
        """Returns "sent", "queued" or "replaced" (an older pending one was dropped)."""
        inst = cmd.instrument
        async with self._lock(inst):
            slot = self._slots.setdefault(inst, _Slot())
            if slot.inflight is None:
                await self._send(inst, slot, cmd)
                return "sent"
            if slot.pending is not None:
                self.stats["dropped"] += 1
                log.warning("%s superseded %s dropped in favour of %s", inst,
                            slot.pending.command.value, cmd.command.value)
                slot.pending = cmd
                return "replaced"
            slot.pending = cmd
            log.info("%s %s queued behind in-flight %s", inst, cmd.command.value,
                     slot.inflight.command.value)
            return "queued"

    async def acknowledge(self, conf: CommandConfirmation) -> Optional[Command]:
        """Match a venue confirmation to the in-flight command and free the slot."""
        inst = conf.instrument
        async with self._lock(inst):
            slot = self._slots.get(inst)
            cur = slot.inflight if slot else None
            if cur is None:
                log.debug("%s confirmation for %s with nothing in flight", inst, conf.command)
                return None
            if conf.command_id and conf.command_id != cur.command_id:
                log.warning("%s stale confirmation %s (in flight %s)", inst,
                            conf.command_id, cur.command_id)
                return None
            if conf.command and not conf.command_id and conf.command != cur.command.value:
                log.warning("%s confirmation for %s while %s in flight", inst,
                            conf.command, cur.command.value)
                return None
            self._clear(slot)
            self.stats["acked"] += 1
            if conf.success:
                log.info("%s %s confirmed", inst, cur.command.value)
            else:
                log.warning("%s %s rejected by venue – %s", inst, cur.command.value, conf.message)
            await self._drain(inst, slot)
            return cur

    async def close(self) -> None:
        timers = [s.timer for s in self._slots.values() if s.timer]
        for t in timers:
            t.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # ─── internals (caller holds the instrument lock) ─────────────────
    def _clear(self, slot: _Slot) -> None:
        if slot.timer is not None and slot.timer is not asyncio.current_task():
            slot.timer.cancel()
        slot.timer = None
        slot.inflight = None

    async def _drain(self, inst: str, slot: _Slot) -> None:
        if slot.pending is not None and slot.inflight is None:
            nxt, slot.pending = slot.pending, None
            await self._send(inst, slot, nxt)

    async def _send(self, inst: str, slot: _Slot, cmd: Command) -> None:
        cmd = replace(cmd, command_id=cmd.command_id or f"{inst}:{next(self._seq)}")
        slot.inflight = cmd
        payload = encode(cmd)
        try:
            await self._retry.run(lambda: self._transport(payload),
                                  f"{inst} {cmd.command.value}")
        except Exception as exc:  # noqa: BLE001
            self.stats["failed"] += 1
            self._clear(slot)
            err = DispatchError(f"{inst} {cmd.command.value} not delivered: {exc}")
            log.error("%s", err)
            await self._drain(inst, slot)
            return
        self.stats["sent"] += 1
        log.info("%s → %s %s (qty=%s stop=%s target=%s)", inst, cmd.command.value,
                 cmd.command_id, cmd.quantity, cmd.stop_loss, cmd.target)
        slot.timer = asyncio.create_task(self._expire(inst, cmd.command_id),
                                         name=f"cmd-timeout:{inst}")

    async def _expire(self, inst: str, command_id: str) -> None:
        await asyncio.sleep(self._config.current.command_timeout_sec)
        async with self._lock(inst):
            slot = self._slots.get(inst)
            if slot is None or slot.inflight is None or slot.inflight.command_id != command_id:
                return
            self.stats["lost"] += 1
            log.warning("%s %s %s unacknowledged after %.1fs – considered lost", inst,
                        slot.inflight.command.value, command_id,
                        self._config.current.command_timeout_sec)
            self._clear(slot)
            await self._drain(inst, slot)
