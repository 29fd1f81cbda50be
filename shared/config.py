"""
config.py – centralised env-var handling
=======================================

• Loads the first `.env` file it finds (cwd or /app) exactly **once**.
• `env(key, default=None, cast=None)` helper for one-off lookups
  with automatic type-casting (int, float, bool).
• `EngineConfig.from_env()` builds the immutable, versioned snapshot that
  is passed explicitly into every pipeline stage.  Changes (operator
  pause, hot reload) publish a *new* snapshot through `ConfigStore`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError
from .params import VersionedStore

# ───── locate & load .env (first one wins) ────────────────────────────
for candidate in (Path.cwd() / ".env", Path("/app/.env")):
    if candidate.is_file():
        load_dotenv(dotenv_path=candidate, override=False)
        break


def env(key: str, default: Any = None, cast: Optional[type] = None) -> Any:
    """`os.getenv` with optional cast; a bad value falls back to `default`."""
    val = os.getenv(key, default)
    if cast is not None and val is not None:
        try:
            if cast is bool:
                return str(val).lower() in ("1", "true", "yes", "y")
            return cast(val)
        except (ValueError, TypeError):
            return default
    return val


def _csv(val: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in val.split(",") if s.strip())


# ───── immutable engine configuration ─────────────────────────────────
@dataclass(frozen=True)
class EngineConfig:
    version: int = 1

    # venue link
    listen_host: str = "0.0.0.0"
    listen_port: int = 9999
    venue_host: str = ""                 # non-empty → client mode
    venue_port: int = 9999
    heartbeat_timeout_sec: float = 30.0
    api_port: int = 8000

    # instruments
    symbols: Tuple[str, ...] = ()
    default_quantity: int = 1

    # feature pipeline
    feature_window: int = 200
    min_window: int = 20
    stale_after_sec: float = 5.0

    # ensemble
    predictor_deadline_ms: float = 150.0
    cold_start_penalty: float = 0.5
    strong_confidence: float = 0.7
    strong_strength: float = 0.5
    hold_confidence: float = 0.4
    hold_margin: float = 0.1
    model_path: str = ""

    # levels & validator
    stop_atr_mult: float = 1.5
    target1_atr_mult: float = 3.0
    target2_atr_mult: float = 4.5
    min_risk_reward: float = 1.5
    max_open_positions: int = 3
    cooldown_sec: float = 60.0
    min_data_quality: float = 0.5

    # position lifecycle
    opening_grace_sec: float = 10.0
    reversal_streak: int = 3
    max_hold_min: float = 240.0

    # trailing
    trailing_interval_sec: float = 15.0
    trailing_min_confidence: float = 0.6
    trailing_max_move_atr: float = 0.5

    # dispatcher / retry
    command_timeout_sec: float = 5.0
    retry_attempts: int = 3
    backoff_initial_sec: float = 0.5
    backoff_max_sec: float = 10.0
    backoff_factor: float = 2.0

    # feedback loop
    threshold_initial: float = 0.65
    threshold_min: float = 0.5
    threshold_max: float = 0.9
    threshold_step: float = 0.02
    loss_run: int = 2
    win_run: int = 3
    weight_alpha: float = 0.1
    weight_max_step: float = 0.05
    weight_floor: float = 0.05
    account_equity: float = 25000.0

    # operator
    paused: bool = False
    persist: bool = True

    def __post_init__(self) -> None:
        problems = []
        if self.min_window < 1 or self.feature_window < self.min_window:
            problems.append("FEATURE_WINDOW must be >= MIN_WINDOW >= 1")
        if self.predictor_deadline_ms <= 0:
            problems.append("PREDICTOR_DEADLINE_MS must be positive")
        if not (0.0 <= self.threshold_min <= self.threshold_max <= 1.0):
            problems.append("need 0 <= THRESHOLD_MIN <= THRESHOLD_MAX <= 1")
        if not (self.threshold_min <= self.threshold_initial <= self.threshold_max):
            problems.append("THRESHOLD_INITIAL outside [THRESHOLD_MIN, THRESHOLD_MAX]")
        if self.threshold_step <= 0:
            problems.append("THRESHOLD_STEP must be positive")
        if self.stop_atr_mult <= 0:
            problems.append("STOP_ATR_MULT must be positive")
        if self.trailing_interval_sec <= 0 or self.command_timeout_sec <= 0:
            problems.append("intervals / timeouts must be positive")
        if not (0.0 < self.weight_floor < 1.0) or self.weight_max_step <= 0:
            problems.append("WEIGHT_FLOOR in (0,1) and WEIGHT_MAX_STEP > 0 required")
        if problems:
            raise ConfigError("; ".join(problems))

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Every field can be overridden by its UPPER_CASE env var."""
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f.name.upper())
            if raw is None or f.name == "version":
                continue
            default = getattr(cls, f.name, None)
            try:
                if isinstance(default, bool):
                    overrides[f.name] = raw.lower() in ("1", "true", "yes", "y")
                elif isinstance(default, tuple):
                    overrides[f.name] = _csv(raw)
                elif isinstance(default, int):
                    overrides[f.name] = int(raw)
                elif isinstance(default, float):
                    overrides[f.name] = float(raw)
                else:
                    overrides[f.name] = raw
            except ValueError as exc:
                raise ConfigError(f"{f.name.upper()}={raw!r}: {exc}") from exc
        return cls(**overrides)

    @property
    def client_mode(self) -> bool:
        return bool(self.venue_host)


class ConfigStore(VersionedStore[EngineConfig]):
    """Publishes a new snapshot (version + 1) instead of mutating fields."""

    def update(self, **changes: Any) -> EngineConfig:
        return self.swap(lambda old: replace(old, version=old.version + 1, **changes))


__all__ = ["env", "EngineConfig", "ConfigStore"]
