# spotbot/risk_manager.py
import logging

from spotbot.context import EngineContext
from spotbot.datastructures import StrategyStats


class RiskManager:
    """
    Process-wide trading brakes: the daily loss cap and the consecutive-loss
    breaker. A halt stays on until the next calendar-day rollover.
    """
    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def state(self):
        return self.ctx.risk_state

    def roll_over(self) -> bool:
        """Resets the daily counters when the calendar day has advanced."""
        today = self.ctx.today()
        if today == self.state.last_reset_date:
            return False
        logging.info(f"New day started. Yesterday's P&L: ${self.state.daily_pnl:.2f}",
                     extra={"context": {"daily_pnl": self.state.daily_pnl}})
        self.state.daily_pnl = 0.0
        self.state.consecutive_losses = 0
        self.state.halted = False
        self.state.last_reset_date = today
        return True

    def is_halted(self) -> bool:
        if self.state.halted:
            return True
        limits = self.ctx.config.RISK
        if self.state.daily_pnl <= -limits.max_daily_loss:
            logging.error(f"Daily loss limit reached: ${self.state.daily_pnl:.2f}. Stopping trading for today.")
            self.state.halted = True
        elif self.state.consecutive_losses >= limits.max_consecutive_losses:
            logging.error(f"{self.state.consecutive_losses} consecutive losses. Stopping trading.")
            self.state.halted = True
        return self.state.halted

    def record_close(self, strategy_id: str, pnl: float):
        """Books a settled trade. A break-even close counts as a loss for the streak."""
        self.state.daily_pnl += pnl
        stats = self.ctx.strategy_stats.setdefault(strategy_id, StrategyStats())
        stats.trade_count += 1
        stats.cumulative_pnl += pnl
        if pnl > 0:
            stats.win_count += 1
            self.state.consecutive_losses = 0
        else:
            self.state.consecutive_losses += 1
