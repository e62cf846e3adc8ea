# spotbot/context.py
import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict

from spotbot.config import Config
from spotbot.datastructures import Position, RiskState, StrategyStats


@dataclass
class EngineContext:
    """
    All mutable engine state, passed explicitly to every component.
    Only the orchestrator's sequential path (scan cycle or rebalance check,
    serialised by `cycle_lock`) mutates it.
    """
    config: Config
    positions: Dict[str, Position] = field(default_factory=dict)
    risk_state: RiskState = field(default_factory=RiskState)
    strategy_stats: Dict[str, StrategyStats] = field(default_factory=dict)
    clock: Callable[[], float] = time.time
    cycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def __post_init__(self):
        for strategy_id in self.config.strategy_params:
            self.strategy_stats.setdefault(strategy_id, StrategyStats())
        if self.risk_state.last_reset_date is None:
            self.risk_state.last_reset_date = self.today()

    def now(self) -> float:
        return self.clock()

    def today(self) -> date:
        return datetime.fromtimestamp(self.clock()).date()
