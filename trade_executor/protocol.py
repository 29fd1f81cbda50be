"""
protocol.py – newline-delimited JSON wire format (venue ⇄ engine)
=================================================================

Inbound lines are sanitised (the venue’s .NET serializer occasionally
leaks `System.Collections.Generic.Dictionary…` / `System.Object` tokens
and trailing commas), parsed, and turned into one tagged message record.
Validation happens here, once; everything downstream trusts the types.

Outbound commands are flat JSON objects:

    {"type":"command","command":"go_long","instrument":"ES 12-25",
     "quantity":1,"price":…,"stop_loss":…,"target":…,"reason":…,
     "timestamp":"…"}                                           + "\n"
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from shared import constants as C
from shared.errors import ProtocolError
from shared.models import Direction, ExitReason, MarketSnapshot
from shared.utils import clamp, finite, opt_float, to_utc, utcnow

_DOTNET_DICT = re.compile(r"System\.Collections\.Generic\.Dictionary[^,}\]]*")
_DOTNET_OBJ = re.compile(r",?\s*System\.Object\]?")
_TRAIL_OBJ = re.compile(r",\s*}")
_TRAIL_ARR = re.compile(r",\s*]")

INDICATOR_FIELDS = ("rsi", "atr", "adx", "ema5", "ema8", "ema13", "ema21", "ema50",
                    "ema200", "macd", "macd_signal", "volatility", "volume_ratio",
                    "bid_size", "ask_size", "vwap")
QUALITY_FIELDS = ("price", "volume", "atr", "rsi")


class CommandType(str, Enum):
    GO_LONG = "go_long"
    GO_SHORT = "go_short"
    CLOSE = "close_position"
    UPDATE_STOP = "update_stop"

    @classmethod
    def entry_for(cls, direction: Direction) -> "CommandType":
        if direction is Direction.LONG:
            return cls.GO_LONG
        if direction is Direction.SHORT:
            return cls.GO_SHORT
        raise ValueError("no entry command for HOLD")


# ─── INBOUND RECORDS ──────────────────────────────────────────────────
@dataclass(frozen=True)
class MarketData:
    snapshot: MarketSnapshot

    @property
    def instrument(self) -> str:
        return self.snapshot.instrument


@dataclass(frozen=True)
class StrategyStatus:
    instrument: str
    timestamp: datetime
    size: float                          # signed, 0 = flat
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    target1: Optional[float] = None
    target2: Optional[float] = None
    unrealized_pnl: float = 0.0
    current_price: Optional[float] = None


@dataclass(frozen=True)
class Registration:
    instrument: str
    timestamp: datetime
    tick_size: float = 0.0
    point_value: float = 1.0


@dataclass(frozen=True)
class TradeEntry:
    instrument: str
    timestamp: datetime
    direction: Direction
    entry_price: float
    quantity: float = 1.0
    stop_loss: Optional[float] = None
    target1: Optional[float] = None
    target2: Optional[float] = None


@dataclass(frozen=True)
class TradeCompleted:
    instrument: str
    timestamp: datetime
    exit_price: Optional[float] = None
    exit_reason: ExitReason = ExitReason.MANUAL
    pnl: Optional[float] = None


@dataclass(frozen=True)
class CommandConfirmation:
    instrument: str
    timestamp: datetime
    command: str
    success: bool = True
    message: str = ""
    command_id: Optional[str] = None


@dataclass(frozen=True)
class Heartbeat:
    timestamp: datetime
    instrument: str = ""


@dataclass(frozen=True)
class TrailingRequest:
    """Venue asks for an immediate trailing evaluation."""

    instrument: str
    timestamp: datetime


InboundMessage = Union[MarketData, StrategyStatus, Registration, TradeEntry,
                       TradeCompleted, CommandConfirmation, Heartbeat, TrailingRequest]


# ─── OUTBOUND ─────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Command:
    command: CommandType
    instrument: str
    quantity: float = 0.0
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    target: Optional[float] = None
    reason: str = ""
    timestamp: datetime = field(default_factory=utcnow)
    command_id: str = ""

    def to_wire(self) -> Dict[str, Any]:
        msg: Dict[str, Any] = {
            "type": C.MSG_COMMAND,
            "command": self.command.value,
            "instrument": self.instrument,
            "quantity": self.quantity,
            "price": self.price,
            "stop_loss": self.stop_loss,
            "target": self.target,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.command is CommandType.UPDATE_STOP:
            msg["stop_price"] = self.stop_loss
        if self.command_id:
            msg["command_id"] = self.command_id
        return msg


def encode(msg: Union[Command, Mapping[str, Any]]) -> bytes:
    payload = msg.to_wire() if isinstance(msg, Command) else dict(msg)
    return (json.dumps(payload, separators=(",", ":"), default=str) + "\n").encode()


def heartbeat_reply(now: Optional[datetime] = None) -> bytes:
    return encode({"type": C.MSG_HEARTBEAT, "timestamp": (now or utcnow()).isoformat()})


# ─── DECODING ─────────────────────────────────────────────────────────
def sanitize(line: str) -> str:
    s = line.strip()
    s = _DOTNET_DICT.sub("{}", s)
    s = _DOTNET_OBJ.sub("", s)
    return _TRAIL_ARR.sub("]", _TRAIL_OBJ.sub("}", s))


def _direction(val: Any) -> Direction:
    v = str(val or "").strip().lower()
    if v in ("long", "buy", "go_long"):
        return Direction.LONG
    if v in ("short", "sell", "go_short"):
        return Direction.SHORT
    return Direction.HOLD


def _exit_reason(val: Any) -> ExitReason:
    v = str(val or "").strip().lower()
    if v in ("stop", "stop_loss", "trailing_stop", "sl"):
        return ExitReason.STOP
    if v in ("target", "take_profit", "target1", "target2", "tp"):
        return ExitReason.TARGET
    if v in ("time", "timeout", "max_exit_time", "session_end"):
        return ExitReason.TIME
    if v in ("reversal", "reversal_exit"):
        return ExitReason.REVERSAL
    return ExitReason.MANUAL


def assess_quality(d: Mapping[str, Any], ts: Optional[datetime], received_at: datetime,
                   stale_after_sec: float = 5.0) -> tuple[float, tuple[str, ...]]:
    """1.0 minus 0.3 for stale data and 0.2 per missing core field."""
    score, issues = 1.0, []
    if ts is None:
        score -= 0.3
        issues.append("missing_timestamp")
    elif (received_at - ts).total_seconds() > stale_after_sec:
        score -= 0.3
        issues.append("stale")
    for name in QUALITY_FIELDS:
        if opt_float(d.get(name)) is None:
            score -= 0.2
            issues.append(f"missing_{name}")
    return clamp(score, 0.0, 1.0), tuple(issues)


def to_snapshot(d: Mapping[str, Any], received_at: Optional[datetime] = None,
                stale_after_sec: float = 5.0) -> MarketSnapshot:
    received_at = received_at or utcnow()
    instrument = str(d.get("instrument") or "").strip()
    if not instrument:
        raise ProtocolError("market_data without instrument")

    raw = dict(d)
    if opt_float(raw.get("price")) is None and opt_float(raw.get("last")) is not None:
        raw["price"] = raw["last"]
    price = opt_float(raw.get("price"))
    if price is None or price <= 0:
        raise ProtocolError(f"{instrument} market_data without a usable price")

    ts = to_utc(raw.get("timestamp"))
    quality, issues = assess_quality(raw, ts, received_at, stale_after_sec)

    indicators: Dict[str, float] = {}
    for name in INDICATOR_FIELDS:
        v = opt_float(raw.get(name))
        if v is not None:
            indicators[name] = v
    if "rsi" in indicators:
        indicators["rsi"] = clamp(indicators["rsi"], 0.0, 100.0)
    if indicators.get("atr", 0.0) <= 0:
        indicators["atr"] = price * 0.001

    return MarketSnapshot(
        instrument=instrument,
        timestamp=ts or received_at,
        price=price,
        volume=max(0.0, finite(raw.get("volume"))),
        bid=opt_float(raw.get("bid")),
        ask=opt_float(raw.get("ask")),
        high=opt_float(raw.get("high")),
        low=opt_float(raw.get("low")),
        indicators=indicators,
        quality=quality,
        issues=issues,
    )


def _status(d: Mapping[str, Any], ts: datetime) -> StrategyStatus:
    side = _direction(d.get("position") or d.get("direction"))
    qty = abs(finite(d.get("position_size", d.get("quantity"))))
    if side is Direction.HOLD:
        qty = 0.0
    elif qty == 0:
        qty = 1.0                         # side reported without size
    return StrategyStatus(
        instrument=str(d["instrument"]),
        timestamp=ts,
        size=side.sign * qty,
        entry_price=opt_float(d.get("entry_price")),
        stop_loss=opt_float(d.get("stop_loss")),
        target1=opt_float(d.get("target1")),
        target2=opt_float(d.get("target2")),
        unrealized_pnl=finite(d.get("unrealized_pnl")),
        current_price=opt_float(d.get("current_price")),
    )


def _trade_entry(d: Mapping[str, Any], ts: datetime) -> TradeEntry:
    entry = opt_float(d.get("entry_price"))
    if entry is None:
        raise ProtocolError("trade_entry without entry_price")
    stop = opt_float(d.get("stop_loss"))
    side = _direction(d.get("direction") or d.get("position"))
    if side is Direction.HOLD and stop is not None and stop != entry:
        side = Direction.LONG if stop < entry else Direction.SHORT
    return TradeEntry(
        instrument=str(d["instrument"]),
        timestamp=ts,
        direction=side,
        entry_price=entry,
        quantity=abs(finite(d.get("quantity"), 1.0)) or 1.0,
        stop_loss=stop,
        target1=opt_float(d.get("target1")),
        target2=opt_float(d.get("target2")),
    )


def decode_line(line: str, received_at: Optional[datetime] = None,
                stale_after_sec: float = 5.0) -> InboundMessage:
    """One wire line → one typed message; raises ProtocolError on garbage."""
    received_at = received_at or utcnow()
    text = sanitize(line)
    if not text:
        raise ProtocolError("empty line")
    try:
        d = json.loads(text)
    except ValueError as exc:             # JSONDecodeError, oversized ints
        raise ProtocolError(f"unparseable after sanitization: {text[:150]!r}") from exc
    if not isinstance(d, dict):
        raise ProtocolError("message is not a JSON object")
    try:
        return _record(d, received_at, stale_after_sec)
    except (ValueError, TypeError, OverflowError) as exc:
        raise ProtocolError(f"{d.get('type')!r} message malformed: {exc}") from exc


def _record(d: Mapping[str, Any], received_at: datetime,
            stale_after_sec: float) -> InboundMessage:
    kind = d.get("type")
    ts = to_utc(d.get("timestamp")) or received_at
    instrument = str(d.get("instrument") or "").strip()

    if kind == C.MSG_HEARTBEAT:
        return Heartbeat(timestamp=ts, instrument=instrument)
    if kind == C.MSG_MARKET_DATA:
        return MarketData(to_snapshot(d, received_at, stale_after_sec))
    if not instrument:
        raise ProtocolError(f"{kind!r} message without instrument")
    if kind == C.MSG_STATUS:
        return _status(d, ts)
    if kind == C.MSG_REGISTRATION:
        return Registration(instrument, ts,
                            tick_size=max(0.0, finite(d.get("tick_size"))),
                            point_value=finite(d.get("point_value"), 1.0) or 1.0)
    if kind in (C.MSG_TRADE_ENTRY, "trade_execution"):
        return _trade_entry(d, ts)
    if kind == C.MSG_TRADE_DONE:
        return TradeCompleted(instrument, ts,
                              exit_price=opt_float(d.get("exit_price", d.get("price"))),
                              exit_reason=_exit_reason(d.get("exit_reason", d.get("reason"))),
                              pnl=opt_float(d.get("pnl", d.get("realized_pnl"))))
    if kind == C.MSG_CONFIRMATION:
        success = d.get("success", True)
        if isinstance(success, str):
            success = success.lower() in ("1", "true", "yes")
        return CommandConfirmation(instrument, ts,
                                   command=str(d.get("command") or ""),
                                   success=bool(success),
                                   message=str(d.get("message") or ""),
                                   command_id=d.get("command_id"))
    if kind == C.MSG_TRAILING:
        return TrailingRequest(instrument, ts)
    raise ProtocolError(f"unknown message type {kind!r}")
