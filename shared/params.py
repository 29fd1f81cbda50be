"""
params.py – versioned, copy-on-write parameter tables
=====================================================

• `VersionedStore` holds one immutable value; writers compute a whole new
  value from the old one and publish it in a single reference swap, so
  readers never see a half-updated table.
• `EngineParameters` is what the feedback loop learns: ensemble weights,
  the minimum-confidence threshold, per-regime trailing statistics and
  the active learning phase with its risk limits.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Dict, Generic, Iterable, Mapping, Optional, TypeVar

T = TypeVar("T")


class VersionedStore(Generic[T]):
    """Single-writer-at-a-time holder of an immutable snapshot."""

    def __init__(self, initial: T):
        self._value = initial
        self._version = 0
        self._lock = threading.Lock()

    @property
    def current(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    def publish(self, value: T) -> T:
        with self._lock:
            self._value = value
            self._version += 1
        return value

    def swap(self, fn: Callable[[T], T]) -> T:
        """Read old → compute new → publish atomically; returns the new value."""
        with self._lock:
            new = fn(self._value)
            self._value = new
            self._version += 1
        return new


# ─── LEARNED TABLES ───────────────────────────────────────────────────
@dataclass(frozen=True)
class AlgoStats:
    """Running performance of one trailing algorithm inside one regime."""

    trades: int = 0
    wins: int = 0
    avg_r: float = 0.0          # EWMA of realized R-multiple

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def score(self) -> float:
        """Selection score; untried algorithms sit at a neutral 0."""
        if not self.trades:
            return 0.0
        return self.avg_r + 0.5 * (self.win_rate - 0.5)

    def to_dict(self) -> Dict[str, Any]:
        return {"trades": self.trades, "wins": self.wins, "avg_r": self.avg_r}


@dataclass(frozen=True)
class RiskLimits:
    max_daily_loss: float = 1000.0       # currency, positive number
    max_consecutive_losses: int = 3
    max_daily_trades: int = 10

    def to_dict(self) -> Dict[str, Any]:
        return {"max_daily_loss": self.max_daily_loss,
                "max_consecutive_losses": self.max_consecutive_losses,
                "max_daily_trades": self.max_daily_trades}


@dataclass(frozen=True)
class TrackRecord:
    """Lifetime results; drives the learning-phase state machine."""

    trades: int = 0
    wins: int = 0
    gross_profit: float = 0.0
    gross_loss: float = 0.0            # positive number
    equity: float = 0.0                # cumulative P&L
    peak_equity: float = 0.0
    max_drawdown: float = 0.0          # currency, positive number

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def profit_factor(self) -> float:
        if self.gross_loss <= 0:
            return float("inf") if self.gross_profit > 0 else 0.0
        return self.gross_profit / self.gross_loss

    def drawdown_pct(self, account_equity: float) -> float:
        base = account_equity + self.peak_equity
        return self.max_drawdown / base if base > 0 else 1.0

    def add(self, pnl: float) -> "TrackRecord":
        equity = self.equity + pnl
        peak = max(self.peak_equity, equity)
        return TrackRecord(
            trades=self.trades + 1,
            wins=self.wins + (1 if pnl > 0 else 0),
            gross_profit=self.gross_profit + max(pnl, 0.0),
            gross_loss=self.gross_loss + max(-pnl, 0.0),
            equity=equity,
            peak_equity=peak,
            max_drawdown=max(self.max_drawdown, peak - equity),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"trades": self.trades, "wins": self.wins,
                "gross_profit": self.gross_profit, "gross_loss": self.gross_loss,
                "equity": self.equity, "peak_equity": self.peak_equity,
                "max_drawdown": self.max_drawdown}


def _freeze(m: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(m or {}))


@dataclass(frozen=True)
class EngineParameters:
    weights: Mapping[str, float] = field(default_factory=dict)
    performance: Mapping[str, float] = field(default_factory=dict)
    min_confidence: float = 0.65
    trailing_stats: Mapping[str, Mapping[str, AlgoStats]] = field(default_factory=dict)
    phase: str = "DISCOVERY"
    risk_limits: RiskLimits = field(default_factory=RiskLimits)
    record: TrackRecord = field(default_factory=TrackRecord)

    def __post_init__(self) -> None:
        object.__setattr__(self, "weights", _freeze(self.weights))
        object.__setattr__(self, "performance", _freeze(self.performance))
        object.__setattr__(self, "trailing_stats", _freeze(
            {r: _freeze(a) for r, a in (self.trailing_stats or {}).items()}))

    @classmethod
    def initial(cls, predictors: Iterable[str], min_confidence: float,
                **kw: Any) -> "EngineParameters":
        names = list(predictors)
        w = 1.0 / len(names) if names else 0.0
        return cls(weights={n: w for n in names},
                   performance={n: 0.5 for n in names},
                   min_confidence=min_confidence, **kw)

    def weight(self, producer: str) -> float:
        return float(self.weights.get(producer, 0.0))

    def algo_stats(self, regime: str, algorithm: str) -> AlgoStats:
        return self.trailing_stats.get(regime, {}).get(algorithm, AlgoStats())

    def evolve(self, **changes: Any) -> "EngineParameters":
        return replace(self, **changes)

    # ─── persistence ──────────────────────────────────────────────────
    def to_dict(self) -> Dict[str, Any]:
        return {
            "weights": dict(self.weights),
            "performance": dict(self.performance),
            "min_confidence": self.min_confidence,
            "trailing_stats": {r: {a: s.to_dict() for a, s in algos.items()}
                               for r, algos in self.trailing_stats.items()},
            "phase": self.phase,
            "risk_limits": self.risk_limits.to_dict(),
            "record": self.record.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "EngineParameters":
        return cls(
            weights={k: float(v) for k, v in d.get("weights", {}).items()},
            performance={k: float(v) for k, v in d.get("performance", {}).items()},
            min_confidence=float(d.get("min_confidence", 0.65)),
            trailing_stats={
                r: {a: AlgoStats(**s) for a, s in algos.items()}
                for r, algos in d.get("trailing_stats", {}).items()
            },
            phase=d.get("phase", "DISCOVERY"),
            risk_limits=RiskLimits(**d.get("risk_limits", {})),
            record=TrackRecord(**d.get("record", {})),
        )


ParameterStore = VersionedStore[EngineParameters]

__all__ = ["VersionedStore", "AlgoStats", "RiskLimits", "TrackRecord", "EngineParameters",
           "ParameterStore"]
