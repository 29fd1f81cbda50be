"""
models.py – frozen records passed between pipeline stages
=========================================================

Every record is validated once, at construction, and never mutated
afterwards; stages derive new records with `dataclasses.replace`.

MarketSnapshot  → FeatureVector → ModelPrediction* → EnsembleDecision
Position / TrailingState        → TradeOutcome     → RiskState
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .utils import clamp


# ─── ENUMS ────────────────────────────────────────────────────────────
class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"
    HOLD = "hold"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1 if self is Direction.SHORT else 0

    def opposite(self) -> "Direction":
        if self is Direction.LONG:
            return Direction.SHORT
        if self is Direction.SHORT:
            return Direction.LONG
        return Direction.HOLD

    @classmethod
    def from_size(cls, size: float) -> "Direction":
        return cls.LONG if size > 0 else cls.SHORT if size < 0 else cls.HOLD


class Tier(str, Enum):
    STRONG = "strong"
    WEAK = "weak"
    HOLD = "hold"


class PositionPhase(str, Enum):
    FLAT = "FLAT"
    OPENING = "OPENING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"


class Regime(str, Enum):
    TRENDING = "trending"
    RANGING = "ranging"
    VOLATILE = "volatile"


class ExitReason(str, Enum):
    TARGET = "target"
    STOP = "stop"
    MANUAL = "manual"
    TIME = "time"
    REVERSAL = "reversal"
    RECONCILED = "reconciled"


def _frozen_map(m: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(m or {}))


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


# ─── MARKET DATA ──────────────────────────────────────────────────────
@dataclass(frozen=True)
class MarketSnapshot:
    """One observation for one instrument; ordered by `timestamp`."""

    instrument: str
    timestamp: datetime
    price: float
    volume: float = 0.0
    bid: Optional[float] = None
    ask: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    indicators: Mapping[str, float] = field(default_factory=dict)
    quality: float = 1.0
    issues: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.instrument:
            raise ValueError("snapshot without instrument")
        if not math.isfinite(self.price) or self.price <= 0:
            raise ValueError(f"invalid price {self.price!r} for {self.instrument}")
        object.__setattr__(self, "indicators", _frozen_map(self.indicators))
        object.__setattr__(self, "quality", clamp(float(self.quality), 0.0, 1.0))
        object.__setattr__(self, "issues", tuple(self.issues))

    def indicator(self, name: str, default: float = 0.0) -> float:
        return float(self.indicators.get(name, default))

    @property
    def spread(self) -> float:
        if self.bid is None or self.ask is None:
            return 0.0
        return max(0.0, self.ask - self.bid)

    @property
    def bar_high(self) -> float:
        return self.high if self.high is not None else self.price

    @property
    def bar_low(self) -> float:
        return self.low if self.low is not None else self.price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "volume": self.volume,
            "bid": self.bid,
            "ask": self.ask,
            "high": self.high,
            "low": self.low,
            "indicators": dict(self.indicators),
            "quality": self.quality,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "MarketSnapshot":
        return cls(
            instrument=d["instrument"],
            timestamp=datetime.fromisoformat(d["timestamp"]),
            price=float(d["price"]),
            volume=float(d.get("volume") or 0.0),
            bid=d.get("bid"),
            ask=d.get("ask"),
            high=d.get("high"),
            low=d.get("low"),
            indicators=d.get("indicators") or {},
            quality=float(d.get("quality", 1.0)),
            issues=tuple(d.get("issues") or ()),
        )


@dataclass(frozen=True)
class FeatureVector:
    """Fixed-length, schema-tagged numeric input shared by all predictors."""

    instrument: str
    timestamp: datetime
    schema_version: str
    names: Tuple[str, ...]
    values: Tuple[float, ...]
    cold_start: bool = False
    sanitized: bool = False
    quality: float = 1.0

    def __post_init__(self) -> None:
        if len(self.names) != len(self.values):
            raise ValueError("feature names / values length mismatch")
        if not all(math.isfinite(v) for v in self.values):
            raise ValueError("feature vector contains non-finite values")

    def get(self, name: str, default: float = 0.0) -> float:
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            return default

    def as_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=np.float32)


# ─── PREDICTIONS ──────────────────────────────────────────────────────
@dataclass(frozen=True)
class ModelPrediction:
    """Output of one predictor; scores are probability mass over {long, short}."""

    producer: str
    long_score: float = 0.5
    short_score: float = 0.5
    confidence: float = 0.0
    latency_ms: float = 0.0
    failed: bool = False
    error: Optional[str] = None

    def __post_init__(self) -> None:
        lo = max(0.0, float(self.long_score)) if math.isfinite(self.long_score) else 0.0
        sh = max(0.0, float(self.short_score)) if math.isfinite(self.short_score) else 0.0
        total = lo + sh
        lo, sh = (0.5, 0.5) if total <= 0 else (lo / total, sh / total)
        conf = float(self.confidence) if math.isfinite(self.confidence) else 0.0
        object.__setattr__(self, "long_score", lo)
        object.__setattr__(self, "short_score", sh)
        object.__setattr__(self, "confidence", clamp(conf, 0.0, 1.0))

    @classmethod
    def failure(cls, producer: str, error: str, latency_ms: float = 0.0) -> "ModelPrediction":
        return cls(producer, confidence=0.0, latency_ms=latency_ms, failed=True, error=error)

    @property
    def direction(self) -> Direction:
        if self.long_score > self.short_score:
            return Direction.LONG
        if self.short_score > self.long_score:
            return Direction.SHORT
        return Direction.HOLD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "producer": self.producer,
            "long": round(self.long_score, 6),
            "short": round(self.short_score, 6),
            "confidence": round(self.confidence, 6),
            "latency_ms": round(self.latency_ms, 3),
            "failed": self.failed,
            "error": self.error,
        }


@dataclass(frozen=True)
class TradeLevels:
    entry: float
    stop: float
    target1: float
    target2: Optional[float] = None

    @property
    def risk(self) -> float:
        return abs(self.entry - self.stop)

    @property
    def reward(self) -> float:
        return abs(self.target1 - self.entry)

    @property
    def risk_reward(self) -> float:
        return self.reward / self.risk if self.risk > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"entry": self.entry, "stop": self.stop,
                "target1": self.target1, "target2": self.target2}


@dataclass(frozen=True)
class EnsembleDecision:
    """Aggregated recommendation plus everything that went into it."""

    instrument: str
    timestamp: datetime
    direction: Direction
    confidence: float
    strength: float
    tier: Tier
    predictions: Tuple[ModelPrediction, ...] = ()
    weights: Mapping[str, float] = field(default_factory=dict)
    degraded: bool = False
    fallback: bool = False
    data_quality: float = 1.0
    cold_start: bool = False
    price: float = 0.0
    atr: float = 0.0
    levels: Optional[TradeLevels] = None
    params_version: int = 0

    def __post_init__(self) -> None:
        if not (0.0 <= self.confidence <= 1.0):
            raise ValueError(f"confidence {self.confidence!r} outside [0,1]")
        object.__setattr__(self, "strength", clamp(float(self.strength), -1.0, 1.0))
        object.__setattr__(self, "predictions", tuple(self.predictions))
        object.__setattr__(self, "weights", _frozen_map(self.weights))

    @property
    def actionable(self) -> bool:
        return self.tier is not Tier.HOLD and self.direction is not Direction.HOLD

    def with_levels(self, levels: TradeLevels) -> "EnsembleDecision":
        return replace(self, levels=levels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "timestamp": self.timestamp.isoformat(),
            "direction": self.direction.value,
            "confidence": round(self.confidence, 6),
            "strength": round(self.strength, 6),
            "tier": self.tier.value,
            "predictions": [p.to_dict() for p in self.predictions],
            "weights": {k: round(v, 6) for k, v in self.weights.items()},
            "degraded": self.degraded,
            "fallback": self.fallback,
            "data_quality": self.data_quality,
            "cold_start": self.cold_start,
            "price": self.price,
            "atr": self.atr,
            "levels": self.levels.to_dict() if self.levels else None,
            "params_version": self.params_version,
        }


# ─── POSITIONS ────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Position:
    """The tracker’s view of one instrument; exactly one per instrument."""

    instrument: str
    size: float = 0.0                       # signed, 0 = flat
    entry_price: float = 0.0
    stop_price: Optional[float] = None
    target1: Optional[float] = None
    target2: Optional[float] = None
    phase: PositionPhase = PositionPhase.FLAT
    opened_at: Optional[datetime] = None
    lifecycle_id: Optional[str] = None
    decision: Optional[EnsembleDecision] = None
    initial_stop: Optional[float] = None
    last_price: float = 0.0
    updated_at: Optional[datetime] = None

    @classmethod
    def flat(cls, instrument: str, at: Optional[datetime] = None) -> "Position":
        return cls(instrument=instrument, updated_at=at)

    @property
    def direction(self) -> Direction:
        return Direction.from_size(self.size)

    @property
    def is_flat(self) -> bool:
        return self.phase is PositionPhase.FLAT

    @property
    def is_live(self) -> bool:
        """Filled at the venue (trailing runs only in these phases)."""
        return self.phase in (PositionPhase.OPEN, PositionPhase.CLOSING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "size": self.size,
            "direction": self.direction.value,
            "entry_price": self.entry_price,
            "stop_price": self.stop_price,
            "target1": self.target1,
            "target2": self.target2,
            "phase": self.phase.value,
            "opened_at": _iso(self.opened_at),
            "lifecycle_id": self.lifecycle_id,
            "last_price": self.last_price,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class TrailingState:
    instrument: str
    lifecycle_id: Optional[str]
    regime: Regime
    algorithm: str
    stop: Optional[float]
    confidence: float = 0.0
    updates: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "lifecycle_id": self.lifecycle_id,
            "regime": self.regime.value,
            "algorithm": self.algorithm,
            "stop": self.stop,
            "confidence": round(self.confidence, 4),
            "updates": self.updates,
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class TradeOutcome:
    """Closes exactly one position lifecycle; input of the feedback loop."""

    lifecycle_id: str
    instrument: str
    direction: Direction
    size: float
    entry_price: float
    exit_price: float
    pnl: float
    exit_reason: ExitReason
    opened_at: Optional[datetime]
    closed_at: datetime
    decision: Optional[EnsembleDecision] = None
    initial_risk: float = 0.0
    regime: Optional[Regime] = None
    algorithm: Optional[str] = None
    filled: bool = True                 # False: entry never reached the venue

    @property
    def won(self) -> bool:
        return self.pnl > 0

    @property
    def points(self) -> float:
        return (self.exit_price - self.entry_price) * self.direction.sign

    @property
    def r_multiple(self) -> float:
        if self.initial_risk <= 0:
            return 1.0 if self.won else -1.0 if self.pnl < 0 else 0.0
        return self.points / self.initial_risk

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lifecycle_id": self.lifecycle_id,
            "instrument": self.instrument,
            "direction": self.direction.value,
            "size": self.size,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "exit_reason": self.exit_reason.value,
            "opened_at": _iso(self.opened_at),
            "closed_at": self.closed_at.isoformat(),
            "initial_risk": self.initial_risk,
            "regime": self.regime.value if self.regime else None,
            "algorithm": self.algorithm,
            "filled": self.filled,
            "decision": self.decision.to_dict() if self.decision else None,
        }


@dataclass(frozen=True)
class RiskState:
    """Session counters; only the feedback loop publishes new ones."""

    session_date: date
    daily_pnl: float = 0.0
    trade_count: int = 0
    consecutive_losses: int = 0
    consecutive_wins: int = 0
    last_trade_at: Mapping[str, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "last_trade_at", _frozen_map(self.last_trade_at))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_date": self.session_date.isoformat(),
            "daily_pnl": self.daily_pnl,
            "trade_count": self.trade_count,
            "consecutive_losses": self.consecutive_losses,
            "consecutive_wins": self.consecutive_wins,
            "last_trade_at": {k: v.isoformat() for k, v in self.last_trade_at.items()},
        }
