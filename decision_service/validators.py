"""
validators.py – independent gates between a decision and a command
===================================================================

A gate is `check(decision, position, risk) -> ValidationResult`.  The
chain runs *every* gate and reports every failing reason; it passes only
if all gates pass.  Gates know nothing about each other, so adding or
removing one is a one-line change where the chain is built.

A gate that raises counts as a failure (fail closed for new entries).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from shared.config import ConfigStore
from shared.logging import get_logger
from shared.models import EnsembleDecision, Position, RiskState
from shared.params import ParameterStore
from shared.utils import utcnow

log = get_logger("decision_service.validators")


@dataclass(frozen=True)
class ValidationResult:
    passed: bool
    reason: str = ""
    gate: str = ""


@dataclass(frozen=True)
class ChainResult:
    passed: bool
    failures: Tuple[ValidationResult, ...] = ()

    @property
    def reasons(self) -> List[str]:
        return [f"{f.gate}: {f.reason}" for f in self.failures]


class Validator:
    name = "validator"

    def check(self, decision: EnsembleDecision, position: Position,
              risk: RiskState) -> ValidationResult:
        raise NotImplementedError

    def ok(self) -> ValidationResult:
        return ValidationResult(True, "", self.name)

    def fail(self, reason: str) -> ValidationResult:
        return ValidationResult(False, reason, self.name)


# ─── GATES ────────────────────────────────────────────────────────────
class SignalGate(Validator):
    name = "signal"

    def check(self, decision, position, risk):
        if not decision.actionable:
            return self.fail(f"tier={decision.tier.value} direction={decision.direction.value}")
        return self.ok()


class ConfidenceGate(Validator):
    """Reads the *live* threshold published by the feedback loop."""

    name = "confidence"

    def __init__(self, params: ParameterStore):
        self._params = params

    def check(self, decision, position, risk):
        thr = self._params.current.min_confidence
        if decision.confidence < thr:
            return self.fail(f"confidence {decision.confidence:.3f} < {thr:.3f}")
        return self.ok()


class RiskRewardGate(Validator):
    name = "risk_reward"

    def __init__(self, config: ConfigStore):
        self._config = config

    def check(self, decision, position, risk):
        lv = decision.levels
        if lv is None:
            return self.fail("no stop / target levels")
        if lv.risk <= 0:
            return self.fail("zero risk distance")
        if (lv.target1 - lv.entry) * decision.direction.sign <= 0 \
                or (lv.entry - lv.stop) * decision.direction.sign <= 0:
            return self.fail("levels on the wrong side of entry")
        need = self._config.current.min_risk_reward
        if lv.risk_reward < need:
            return self.fail(f"R/R {lv.risk_reward:.2f} < {need:.2f}")
        return self.ok()


class ExposureGate(Validator):
    name = "exposure"

    def __init__(self, config: ConfigStore, open_count: Callable[[], int]):
        self._config = config
        self._open_count = open_count

    def check(self, decision, position, risk):
        limit = self._config.current.max_open_positions
        n = self._open_count()
        if n >= limit:
            return self.fail(f"{n} open position(s) >= max {limit}")
        return self.ok()


class CooldownGate(Validator):
    name = "cooldown"

    def __init__(self, config: ConfigStore, clock: Callable[[], datetime] = utcnow):
        self._config = config
        self._clock = clock

    def check(self, decision, position, risk):
        last = risk.last_trade_at.get(decision.instrument)
        if last is None:
            return self.ok()
        wait = self._config.current.cooldown_sec
        elapsed = (self._clock() - last).total_seconds()
        if elapsed < wait:
            return self.fail(f"last trade {elapsed:.0f}s ago < {wait:.0f}s")
        return self.ok()


class DataQualityGate(Validator):
    name = "data_quality"

    def __init__(self, config: ConfigStore):
        self._config = config

    def check(self, decision, position, risk):
        floor = self._config.current.min_data_quality
        if decision.data_quality < floor:
            return self.fail(f"quality {decision.data_quality:.2f} < {floor:.2f}")
        if decision.fallback:
            return self.fail("fallback decision (no predictor survived)")
        return self.ok()


class CircuitBreakerGate(Validator):
    """Daily loss, consecutive losses and trade count, per phase limits."""

    name = "circuit_breaker"

    def __init__(self, params: ParameterStore):
        self._params = params

    def check(self, decision, position, risk):
        lim = self._params.current.risk_limits
        tripped = []
        if risk.daily_pnl <= -abs(lim.max_daily_loss):
            tripped.append(f"daily P&L {risk.daily_pnl:.2f} <= -{abs(lim.max_daily_loss):.2f}")
        if risk.consecutive_losses >= lim.max_consecutive_losses:
            tripped.append(f"{risk.consecutive_losses} consecutive losses")
        if risk.trade_count >= lim.max_daily_trades:
            tripped.append(f"{risk.trade_count} trades today")
        return self.fail("; ".join(tripped)) if tripped else self.ok()


class PositionGate(Validator):
    """New entries only from flat; no reversal without going flat first."""

    name = "position"

    def check(self, decision, position, risk):
        if not position.is_flat:
            return self.fail(f"position is {position.phase.value} {position.direction.value}")
        return self.ok()


class TradingPausedGate(Validator):
    name = "paused"

    def __init__(self, config: ConfigStore):
        self._config = config

    def check(self, decision, position, risk):
        return self.fail("trading paused by operator") if self._config.current.paused else self.ok()


# ─── CHAIN ────────────────────────────────────────────────────────────
class ValidatorChain:
    def __init__(self, validators: Optional[Sequence[Validator]] = None):
        self._validators: List[Validator] = list(validators or [])

    def add(self, v: Validator) -> "ValidatorChain":
        self._validators.append(v)
        return self

    def remove(self, name: str) -> None:
        self._validators = [v for v in self._validators if v.name != name]

    @property
    def names(self) -> List[str]:
        return [v.name for v in self._validators]

    def validate(self, decision: EnsembleDecision, position: Position,
                 risk: RiskState) -> ChainResult:
        failures = []
        for v in self._validators:
            try:
                res = v.check(decision, position, risk)
            except Exception as exc:  # noqa: BLE001
                log.error("gate %s raised – %s", v.name, exc)
                res = ValidationResult(False, f"gate error: {exc}", v.name)
            if not res.passed:
                failures.append(res)
        return ChainResult(not failures, tuple(failures))


def standard_chain(config: ConfigStore, params: ParameterStore,
                   open_count: Callable[[], int],
                   clock: Callable[[], datetime] = utcnow) -> ValidatorChain:
    return ValidatorChain([
        SignalGate(),
        TradingPausedGate(config),
        ConfidenceGate(params),
        RiskRewardGate(config),
        ExposureGate(config, open_count),
        CooldownGate(config, clock),
        DataQualityGate(config),
        CircuitBreakerGate(params),
        PositionGate(),
    ])
