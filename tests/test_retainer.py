from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import MagicMock

import pandas as pd
import redis

from conftest import T0, make_window
from data_retainer.retainer import Recorder
from shared.constants import KEY_PARAMETERS, KEY_SNAPSHOTS, KEY_TRADES_ACTIVE, SNAPSHOT_KEEP
from shared.models import Direction, ExitReason, Position, PositionPhase, TradeOutcome
from shared.params import EngineParameters


def _recorder(tmp_path, client=None):
    return Recorder(client=client or MagicMock(), history_dir=str(tmp_path))


async def test_snapshots_are_appended_and_trimmed(tmp_path):
    rec = _recorder(tmp_path)
    task = asyncio.create_task(rec.run())
    snap = make_window(n=1)[0]
    rec.snapshot(snap)
    await asyncio.wait_for(rec.flush(), 1.0)
    task.cancel()
    pipe = rec._rds.pipeline.return_value
    key = KEY_SNAPSHOTS.format("ES")
    pipe.rpush.assert_called_once_with(key, json.dumps(snap.to_dict()))
    pipe.ltrim.assert_called_once_with(key, -SNAPSHOT_KEEP, -1)


async def test_positions_and_outcomes(tmp_path):
    rec = _recorder(tmp_path)
    task = asyncio.create_task(rec.run())
    live = Position("ES", size=1, entry_price=100.0, phase=PositionPhase.OPEN, lifecycle_id="ES-1")
    rec.position(live)
    rec.position(Position.flat("ES"))
    rec.outcome(TradeOutcome("ES-1", "ES", Direction.LONG, 1, 100.0, 101.0, 50.0,
                             ExitReason.TARGET, T0, T0 + timedelta(minutes=4)))
    await asyncio.wait_for(rec.flush(), 1.0)
    task.cancel()
    rec._rds.hset.assert_called_once()
    assert rec._rds.hset.call_args.args[:2] == (KEY_TRADES_ACTIVE, "ES")
    rec._rds.hdel.assert_called_once_with(KEY_TRADES_ACTIVE, "ES")
    log = pd.read_csv(tmp_path / "trades" / "trade_log.csv")
    assert list(log["lifecycle_id"]) == ["ES-1"]
    assert log["pnl"].iloc[0] == 50.0


async def test_store_failures_are_logged_not_raised(tmp_path):
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("down")
    rec = _recorder(tmp_path, client)
    task = asyncio.create_task(rec.run())
    rec.parameters(EngineParameters.initial(["a"], 0.65))
    await asyncio.wait_for(rec.flush(), 1.0)
    assert rec.failed == 1
    assert not task.done()
    task.cancel()


def test_disabled_recorder_enqueues_nothing(tmp_path):
    rec = Recorder(client=MagicMock(), enabled=False, history_dir=None)
    rec.snapshot(make_window(n=1)[0])
    assert rec.queue.qsize() == 0


def test_startup_reads(tmp_path):
    client = MagicMock()
    snaps = make_window(n=3)
    client.lrange.return_value = [json.dumps(s.to_dict()) for s in snaps] + ["{broken"]
    params = EngineParameters.initial(["a", "b"], 0.7)
    client.get.return_value = json.dumps(params.to_dict())
    rec = _recorder(tmp_path, client)
    assert rec.load_window("ES", 200) == snaps
    assert rec.load_parameters() == params
    client.get.assert_called_with(KEY_PARAMETERS)
    client.get.return_value = None
    assert rec.load_parameters() is None
