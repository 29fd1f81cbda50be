"""
utils.py – small generic helpers reused in multiple components
"""

from __future__ import annotations
import math
from datetime import datetime, timezone
from typing import Any, Optional

import numpy as np


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x


def finite(x: Any, default: float = 0.0) -> float:
    """float(x) or `default` when x is missing / NaN / ±inf / garbage."""
    try:
        v = float(x)
    except (TypeError, ValueError, OverflowError):
        return default
    return v if math.isfinite(v) else default


def opt_float(x: Any) -> Optional[float]:
    """Like `finite` but keeps ‘absent’ distinct from zero."""
    if x is None or x == "":
        return None
    try:
        v = float(x)
    except (TypeError, ValueError, OverflowError):
        return None
    return v if math.isfinite(v) else None


def round_tick(price: float, tick: float) -> float:
    """Round ‘price’ to the nearest multiple of the instrument tick."""
    if tick <= 0:
        return price
    return float(np.round(price / tick) * tick)


def to_utc(val: Any) -> Optional[datetime]:
    """Tolerant timestamp parser: ISO string, epoch s/ms or datetime → aware UTC."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return val if val.tzinfo else val.replace(tzinfo=timezone.utc)
    if isinstance(val, (int, float)) or (isinstance(val, str) and val.isdigit()):
        try:
            n = float(val)
        except OverflowError:
            return None
        if not math.isfinite(n):
            return None
        if n > 1e11:                       # epoch milliseconds
            n /= 1000.0
        try:
            return datetime.fromtimestamp(n, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None
    try:
        ts = datetime.fromisoformat(str(val).replace("Z", "+00:00"))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
