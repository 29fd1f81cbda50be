"""
retainer.py – fire-and-continue persistence of the engine’s records
===================================================================

• Pipeline stages call `snapshot()`, `decision()`, `outcome()`,
  `position()`, `parameters()`; each only enqueues.  `run()` drains the
  queue in a worker thread so Redis latency never reaches the read loop.
• Redis layout (append-only lists, trimmed to a rolling length):

      live:data:snapshots:<SYM>   LIST  JSON MarketSnapshot
      live:predictions:<SYM>      LIST  JSON EnsembleDecision (+ predictions)
      live:trades:active          HASH  instrument → JSON Position
      live:trades:closed          LIST  JSON TradeOutcome
      live:params:current         STR   JSON EngineParameters
      live:params:history         LIST  JSON EngineParameters

• Closed trades are also appended to  <HISTORY_DIR>/trades/trade_log.csv.
• Reads happen only at startup (`load_window`, `load_parameters`).
• A failed write is logged and dropped; persistence never decides the
  outcome of a request.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
import redis

from shared.config import env
from shared.constants import (
    HISTORY_KEEP, KEY_PARAM_HISTORY, KEY_PARAMETERS, KEY_PREDICTIONS,
    KEY_SNAPSHOTS, KEY_TRADES_ACTIVE, KEY_TRADES_CLOSED, PREDICTION_KEEP,
    SNAPSHOT_KEEP,
)
from shared.logging import get_logger
from shared.models import EnsembleDecision, MarketSnapshot, Position, TradeOutcome
from shared.params import EngineParameters

# ─── CONFIG ──────────────────────────────────────────────────────────
HIST_DIR = env("HISTORY_DIR", "./history")
QUEUE_MAX = env("RECORDER_QUEUE_MAX", 10000, int)

log = get_logger("data_retainer")

_Op = Tuple[str, str, Any, int]          # (kind, key, payload, keep)


def _append_row(csv_path: Path, row: Dict[str, Any]) -> None:
    df = pd.DataFrame([row])
    df.to_csv(csv_path, mode="a", index=False, header=not csv_path.exists())


class Recorder:
    def __init__(self, client: Any = None, enabled: bool = True,
                 history_dir: Optional[str] = HIST_DIR):
        if client is None:
            from shared.redis_client import rds
            client = rds
        self._rds = client
        self.enabled = enabled
        self.queue: "asyncio.Queue[_Op]" = asyncio.Queue(maxsize=QUEUE_MAX)
        self.dropped = 0
        self.failed = 0
        self._trade_csv: Optional[Path] = None
        if history_dir:
            trades = Path(history_dir).resolve() / "trades"
            trades.mkdir(parents=True, exist_ok=True)
            self._trade_csv = trades / "trade_log.csv"

    # ─── enqueue side (never blocks) ──────────────────────────────────
    def _put(self, op: _Op) -> None:
        if not self.enabled:
            return
        try:
            self.queue.put_nowait(op)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped % 100 == 1:
                log.warning("recorder queue full – %d record(s) dropped so far", self.dropped)

    def snapshot(self, snap: MarketSnapshot) -> None:
        self._put(("list", KEY_SNAPSHOTS.format(snap.instrument),
                   json.dumps(snap.to_dict()), SNAPSHOT_KEEP))

    def decision(self, decision: EnsembleDecision) -> None:
        self._put(("list", KEY_PREDICTIONS.format(decision.instrument),
                   json.dumps(decision.to_dict()), PREDICTION_KEEP))

    def position(self, pos: Position) -> None:
        if pos.is_flat:
            self._put(("hdel", KEY_TRADES_ACTIVE, pos.instrument, 0))
        else:
            self._put(("hset", KEY_TRADES_ACTIVE, (pos.instrument, json.dumps(pos.to_dict())), 0))

    def outcome(self, outcome: TradeOutcome) -> None:
        self._put(("list", KEY_TRADES_CLOSED, json.dumps(outcome.to_dict()), HISTORY_KEEP))
        self._put(("csv", "", outcome, 0))

    def parameters(self, params: EngineParameters) -> None:
        blob = json.dumps(params.to_dict())
        self._put(("set", KEY_PARAMETERS, blob, 0))
        self._put(("list", KEY_PARAM_HISTORY, blob, HISTORY_KEEP))

    # ─── drain side ───────────────────────────────────────────────────
    def _write(self, op: _Op) -> None:
        kind, key, payload, keep = op
        if kind == "list":
            pipe = self._rds.pipeline()
            pipe.rpush(key, payload)
            pipe.ltrim(key, -keep, -1)
            pipe.execute()
        elif kind == "set":
            self._rds.set(key, payload)
        elif kind == "hset":
            field, value = payload
            self._rds.hset(key, field, value)
        elif kind == "hdel":
            self._rds.hdel(key, payload)
        elif kind == "csv" and self._trade_csv is not None:
            row = payload.to_dict()
            row.pop("decision", None)
            dec = payload.decision
            row["decision_confidence"] = dec.confidence if dec else None
            row["decision_degraded"] = dec.degraded if dec else None
            _append_row(self._trade_csv, row)

    async def run(self) -> None:
        log.info("recorder up (enabled=%s)", self.enabled)
        while True:
            op = await self.queue.get()
            try:
                await asyncio.to_thread(self._write, op)
            except (redis.RedisError, OSError, ValueError) as exc:
                self.failed += 1
                log.error("persist %s %s failed – %s", op[0], op[1], exc)
            finally:
                self.queue.task_done()

    async def flush(self) -> None:
        await self.queue.join()

    # ─── startup reads ────────────────────────────────────────────────
    def load_window(self, instrument: str, n: int) -> List[MarketSnapshot]:
        rows = self._rds.lrange(KEY_SNAPSHOTS.format(instrument), -n, -1)
        out: List[MarketSnapshot] = []
        for raw in rows:
            try:
                out.append(MarketSnapshot.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError) as exc:
                log.warning("%s bad stored snapshot skipped – %s", instrument, exc)
        return out

    def load_parameters(self) -> Optional[EngineParameters]:
        raw = self._rds.get(KEY_PARAMETERS)
        if not raw:
            return None
        try:
            return EngineParameters.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            log.warning("stored parameters unreadable – %s", exc)
            return None
