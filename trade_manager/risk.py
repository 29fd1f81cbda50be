"""
risk.py – session risk counters with an explicit reset boundary
---------------------------------------------------------------
• `RiskBook` is a VersionedStore[RiskState]; the feedback loop is the only
  writer (`record`), the validator only reads `.current`.
• Counters only grow inside a session.  `roll(now)` publishes a fresh
  state when the UTC date changes; `reset()` is the operator override.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Callable, Optional

from shared.logging import get_logger
from shared.models import RiskState, TradeOutcome
from shared.params import VersionedStore
from shared.utils import utcnow

log = get_logger("trade_manager.risk")


def apply_outcome(state: RiskState, outcome: TradeOutcome) -> RiskState:
    """Pure: the counters after one closed trade (same session assumed)."""
    won, lost = outcome.pnl > 0, outcome.pnl < 0
    last = dict(state.last_trade_at)
    last[outcome.instrument] = outcome.closed_at
    return replace(
        state,
        daily_pnl=state.daily_pnl + outcome.pnl,
        trade_count=state.trade_count + 1,
        consecutive_losses=state.consecutive_losses + 1 if lost else 0,
        consecutive_wins=state.consecutive_wins + 1 if won else 0,
        last_trade_at=last,
    )


class RiskBook(VersionedStore[RiskState]):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        super().__init__(RiskState(session_date=clock().date()))

    def roll(self, now: Optional[datetime] = None) -> bool:
        """Start a new session if the UTC date moved on; True if it did."""
        today: date = (now or self._clock()).date()
        if today <= self.current.session_date:
            return False
        old = self.current
        self.publish(RiskState(session_date=today))
        log.info("session %s closed (pnl %.2f, %d trade(s)) – counters reset",
                 old.session_date.isoformat(), old.daily_pnl, old.trade_count)
        return True

    def reset(self) -> RiskState:
        log.warning("risk counters reset by operator")
        return self.publish(RiskState(session_date=self._clock().date()))

    def record(self, outcome: TradeOutcome) -> RiskState:
        self.roll(outcome.closed_at)
        return self.swap(lambda s: apply_outcome(s, outcome))
