from __future__ import annotations

import json
from datetime import timedelta

import pytest

from conftest import T0
from shared.errors import ProtocolError
from shared.models import Direction, ExitReason
from trade_executor.protocol import (
    Command, CommandConfirmation, CommandType, Heartbeat, MarketData, Registration,
    StrategyStatus, TradeCompleted, TradeEntry, TrailingRequest, decode_line, encode,
    heartbeat_reply, sanitize,
)


def _line(**d):
    return json.dumps(d)


def test_market_data_with_last_alias_and_defaults():
    msg = decode_line(_line(type="market_data", instrument="ES 12-25", timestamp=T0.isoformat(),
                            last=5000.0, volume=12, rsi=150),
                      received_at=T0 + timedelta(seconds=1))
    assert isinstance(msg, MarketData)
    snap = msg.snapshot
    assert snap.price == 5000.0
    assert snap.indicator("rsi") == 100.0
    assert snap.indicator("atr") == pytest.approx(5.0)
    assert snap.quality == pytest.approx(0.8)
    assert "missing_atr" in snap.issues


def test_stale_market_data_loses_quality():
    msg = decode_line(_line(type="market_data", instrument="ES", timestamp=T0.isoformat(),
                            price=5000.0, volume=1, atr=2.0, rsi=55),
                      received_at=T0 + timedelta(seconds=30), stale_after_sec=5)
    assert msg.snapshot.quality == pytest.approx(0.7)
    assert msg.snapshot.issues == ("stale",)


def test_market_data_without_price_is_rejected():
    with pytest.raises(ProtocolError):
        decode_line(_line(type="market_data", instrument="ES", timestamp=T0.isoformat()))


def test_dotnet_artifacts_and_trailing_commas_are_sanitized():
    raw = ('{"type":"heartbeat","timestamp":"2024-03-04T14:00:00+00:00",'
           '"meta":System.Collections.Generic.Dictionary`2[System.String,System.Object],}')
    assert json.loads(sanitize(raw))["meta"] == {}
    assert isinstance(decode_line(raw), Heartbeat)
    assert json.loads(sanitize('{"a":[1,2,],}')) == {"a": [1, 2]}


@pytest.mark.parametrize("line", ["not json", "[1,2]", "", '{"type":"mystery","instrument":"ES"}',
                                  '{"type":"strategy_status"}'])
def test_garbage_raises_protocol_error(line):
    with pytest.raises(ProtocolError):
        decode_line(line)


def test_strategy_status_is_signed():
    short = decode_line(_line(type="strategy_status", instrument="ES", timestamp=T0.isoformat(),
                              position="short", position_size=2, entry_price=101.0,
                              stop_loss=102.0, current_price=100.5))
    assert isinstance(short, StrategyStatus)
    assert short.size == -2
    flat = decode_line(_line(type="strategy_status", instrument="ES", position="flat"))
    assert flat.size == 0


def test_venue_records():
    reg = decode_line(_line(type="instrument_registration", instrument="NQ", tick_size=0.25,
                            point_value=20))
    assert isinstance(reg, Registration) and reg.point_value == 20.0
    entry = decode_line(_line(type="trade_execution", instrument="ES", entry_price=100.0,
                              stop_loss=98.0, quantity=2))
    assert isinstance(entry, TradeEntry)
    assert entry.direction is Direction.LONG          # inferred from the stop side
    done = decode_line(_line(type="trade_completed", instrument="ES", exit_price=103.0,
                             exit_reason="take_profit", pnl=150))
    assert isinstance(done, TradeCompleted) and done.exit_reason is ExitReason.TARGET
    conf = decode_line(_line(type="command_confirmation", instrument="ES", command="go_long",
                             success="false", message="rejected"))
    assert isinstance(conf, CommandConfirmation) and not conf.success
    assert isinstance(decode_line(_line(type="smart_trailing_request", instrument="ES")),
                      TrailingRequest)


def test_epoch_millisecond_timestamps():
    ms = int(T0.timestamp() * 1000)
    msg = decode_line(_line(type="heartbeat", timestamp=ms))
    assert msg.timestamp == T0


def test_command_wire_format():
    cmd = Command(CommandType.GO_LONG, "ES", 1, price=100.0, stop_loss=98.5, target=103.0,
                  reason="strong", timestamp=T0)
    wire = encode(cmd)
    assert wire.endswith(b"\n")
    d = json.loads(wire)
    assert d == {"type": "command", "command": "go_long", "instrument": "ES", "quantity": 1,
                 "price": 100.0, "stop_loss": 98.5, "target": 103.0, "reason": "strong",
                 "timestamp": T0.isoformat()}
    upd = json.loads(encode(Command(CommandType.UPDATE_STOP, "ES", 1, stop_loss=99.0,
                                    command_id="ES:7")))
    assert upd["stop_price"] == 99.0
    assert upd["command_id"] == "ES:7"


def test_heartbeat_reply():
    assert json.loads(heartbeat_reply(T0)) == {"type": "heartbeat", "timestamp": T0.isoformat()}
    with pytest.raises(ValueError):
        CommandType.entry_for(Direction.HOLD)


@pytest.mark.parametrize("raw_ts", ["NaN", "Infinity", "-Infinity", "99999999999999999999",
                                    "1" + "0" * 400])
def test_unusable_numeric_timestamp_falls_back_to_receipt_time(raw_ts):
    line = ('{"type":"market_data","instrument":"ES","price":5000.0,"volume":1,'
            '"atr":2.0,"rsi":55,"timestamp":' + raw_ts + '}')
    msg = decode_line(line, received_at=T0)
    assert msg.snapshot.timestamp == T0
    assert msg.snapshot.quality == pytest.approx(0.7)
    assert msg.snapshot.issues == ("missing_timestamp",)


def test_unusable_timestamp_on_other_messages_uses_receipt_time():
    msg = decode_line('{"type":"strategy_status","instrument":"ES","position":"flat","timestamp":NaN}',
                      received_at=T0)
    assert isinstance(msg, StrategyStatus)
    assert msg.timestamp == T0
