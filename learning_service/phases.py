"""
phases.py – learning milestones as an explicit state machine
------------------------------------------------------------

    DISCOVERY ─▶ FILTERING ─▶ OPTIMIZING ─▶ REFINING ─▶ PRODUCTION

Each phase has entry conditions on the lifetime track record and sets
the confidence-threshold floor and the session risk limits.  The engine
is always in the furthest phase whose conditions hold *and* all of whose
predecessors’ conditions hold, so PRODUCTION is left again if its
performance conditions stop holding.

| phase      | trades | floor | daily loss | consec. losses | trades/day | extra                         |
|------------|--------|-------|------------|----------------|------------|-------------------------------|
| DISCOVERY  |      0 | 0.50  | 3000       | 7              | 20         |                               |
| FILTERING  |     50 | 0.60  | 2000       | 5              | 15         |                               |
| OPTIMIZING |    100 | 0.65  | 1500       | 4              | 12         |                               |
| REFINING   |    200 | 0.70  | 1000       | 3              | 10         |                               |
| PRODUCTION |    300 | 0.75  | 1000       | 3              | 10         | win ≥ 52 %, PF ≥ 1.2, DD ≤ 15 % |
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from shared.logging import get_logger
from shared.params import RiskLimits, TrackRecord

log = get_logger("learning_service.phases")


@dataclass(frozen=True)
class Phase:
    name: str
    min_trades: int
    confidence_floor: float
    limits: RiskLimits
    min_win_rate: float = 0.0
    min_profit_factor: float = 0.0
    max_drawdown: float = 1.0

    def admits(self, record: TrackRecord, account_equity: float) -> bool:
        if record.trades < self.min_trades:
            return False
        if self.min_win_rate and record.win_rate < self.min_win_rate:
            return False
        if self.min_profit_factor and record.profit_factor < self.min_profit_factor:
            return False
        if self.max_drawdown < 1.0 and record.drawdown_pct(account_equity) > self.max_drawdown:
            return False
        return True


PHASES: Tuple[Phase, ...] = (
    Phase("DISCOVERY", 0, 0.50, RiskLimits(3000.0, 7, 20)),
    Phase("FILTERING", 50, 0.60, RiskLimits(2000.0, 5, 15)),
    Phase("OPTIMIZING", 100, 0.65, RiskLimits(1500.0, 4, 12)),
    Phase("REFINING", 200, 0.70, RiskLimits(1000.0, 3, 10)),
    Phase("PRODUCTION", 300, 0.75, RiskLimits(1000.0, 3, 10),
          min_win_rate=0.52, min_profit_factor=1.2, max_drawdown=0.15),
)


class PhaseMachine:
    def __init__(self, phases: Sequence[Phase] = PHASES):
        if not phases or phases[0].min_trades != 0:
            raise ValueError("first phase must admit an empty track record")
        self.phases: Tuple[Phase, ...] = tuple(phases)
        self._by_name: Dict[str, Phase] = {p.name: p for p in self.phases}

    @property
    def initial(self) -> Phase:
        return self.phases[0]

    def get(self, name: str) -> Phase:
        return self._by_name.get(name, self.initial)

    def resolve(self, current: str, record: TrackRecord, account_equity: float) -> Phase:
        """The phase `record` qualifies for; logs a transition if it differs."""
        target = self.initial
        for phase in self.phases[1:]:
            if not phase.admits(record, account_equity):
                break
            target = phase
        if target.name != current:
            log.info("learning phase %s → %s after %d trade(s) (win %.0f%%, PF %.2f)",
                     current, target.name, record.trades, record.win_rate * 100,
                     record.profit_factor)
        return target
