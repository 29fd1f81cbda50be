"""
loader.py – bounded rolling snapshot window per instrument
==========================================================
• Append-only per instrument; the oldest snapshot is evicted once the
  window holds `capacity` rows.
• Readers get an immutable tuple, so a consumer never sees the window
  change underneath it.
• Out-of-order snapshots (older than the newest kept one) are rejected.
• `bootstrap()` refills the windows from persistence at startup and
  tolerates an unavailable store.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Iterable, List, Tuple

from shared.logging import get_logger
from shared.models import MarketSnapshot

log = get_logger("data_loader")


@dataclass(frozen=True)
class InstrumentInfo:
    """Contract details announced by the venue in `instrument_registration`."""

    instrument: str
    tick_size: float = 0.0
    point_value: float = 1.0


class SnapshotCache:
    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._windows: Dict[str, Deque[MarketSnapshot]] = {}
        self._info: Dict[str, InstrumentInfo] = {}

    # ─── market data ──────────────────────────────────────────────────
    def append(self, snap: MarketSnapshot) -> bool:
        """Add `snap`; returns False (and keeps the window) if out of order."""
        win = self._windows.setdefault(snap.instrument, deque(maxlen=self.capacity))
        if win and snap.timestamp < win[-1].timestamp:
            log.warning("%s out-of-order snapshot %s < %s – dropped",
                        snap.instrument, snap.timestamp.isoformat(),
                        win[-1].timestamp.isoformat())
            return False
        win.append(snap)
        return True

    def window(self, instrument: str) -> Tuple[MarketSnapshot, ...]:
        return tuple(self._windows.get(instrument, ()))

    def instruments(self) -> List[str]:
        return sorted(self._windows)

    def __len__(self) -> int:
        return sum(len(w) for w in self._windows.values())

    # ─── instrument registry ──────────────────────────────────────────
    def register(self, info: InstrumentInfo) -> None:
        self._info[info.instrument] = info
        self._windows.setdefault(info.instrument, deque(maxlen=self.capacity))
        log.info("registered %s (tick=%s, point=%s)",
                 info.instrument, info.tick_size, info.point_value)

    def info(self, instrument: str) -> InstrumentInfo:
        return self._info.get(instrument) or InstrumentInfo(instrument)

    # ─── startup ──────────────────────────────────────────────────────
    def bootstrap(self, symbols: Iterable[str],
                  load: Callable[[str, int], List[MarketSnapshot]]) -> int:
        """Refill windows via `load(instrument, n)`; store failures are non-fatal."""
        total = 0
        for sym in symbols:
            try:
                rows = load(sym, self.capacity)
            except Exception as exc:  # noqa: BLE001
                log.warning("%s bootstrap skipped – %s", sym, exc)
                continue
            for snap in sorted(rows, key=lambda s: s.timestamp):
                if self.append(snap):
                    total += 1
        if total:
            log.info("bootstrapped %d snapshot(s) for %d instrument(s)",
                     total, len(self._windows))
        return total
