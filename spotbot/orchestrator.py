# spotbot/orchestrator.py
import asyncio
import logging

from spotbot.context import EngineContext
from spotbot.exchange_connector import ExchangeConnector, ExchangeError
from spotbot.position_manager import PositionManager
from spotbot.risk_manager import RiskManager
from spotbot.signal_aggregator import SignalAggregator


class ScanOrchestrator:
    """
    The periodic driver: daily rollover, halt check, exits for every open
    position, then at most one entry per flat instrument, then a summary.
    """
    def __init__(self, ctx: EngineContext, connector: ExchangeConnector, risk: RiskManager,
                 positions: PositionManager, aggregator: SignalAggregator):
        self.ctx = ctx
        self.connector = connector
        self.risk = risk
        self.positions = positions
        self.aggregator = aggregator

    @property
    def pause(self) -> float:
        return self.ctx.config.SCAN_PAUSE_SECONDS

    async def run_scan_cycle(self):
        """The main periodic task for the orchestrator."""
        self.risk.roll_over()
        if self.risk.is_halted():
            logging.warning("Trading halted, skipping scan")
            return

        logging.info("--- Scanning markets with all strategies ---")

        # Step 1: Exits always run before entries
        for symbol in list(self.ctx.positions):
            await self.positions.check_exit(symbol)
            await asyncio.sleep(self.pause)

        # Step 2: Balance gate
        try:
            balance = await self.connector.get_account_balance()
        except ExchangeError as e:
            logging.error(f"Failed to get account balance: {e}")
            return
        if balance.total_cash < self.ctx.config.RISK.min_trade_size:
            logging.warning(f"Insufficient balance: ${balance.total_cash:.2f}")
            return

        # Step 3: Entries, one per flat instrument
        for instrument in self.ctx.config.INSTRUMENTS:
            if instrument.symbol in self.ctx.positions:
                continue
            if self.risk.is_halted():
                break
            for signal in await self.aggregator.analyze(instrument):
                if signal.buy and await self.positions.try_enter(instrument, signal, balance):
                    break
            await asyncio.sleep(self.pause)

        self.log_summary()

    def log_summary(self):
        state = self.ctx.risk_state
        logging.info(f"Scan complete. Positions: {len(self.ctx.positions)}, Daily P&L: ${state.daily_pnl:.2f}",
                     extra={"context": {"positions": len(self.ctx.positions), "daily_pnl": state.daily_pnl}})
        for strategy_id, stats in self.ctx.strategy_stats.items():
            if stats.trade_count > 0:
                logging.info(f"  {strategy_id}: {stats.trade_count} trades, {stats.win_rate:.1f}% win rate, "
                             f"${stats.cumulative_pnl:.2f} P&L")

    async def run(self):
        """Runs the scan cycle on a fixed interval."""
        interval = self.ctx.config.SCAN_INTERVAL
        while True:
            async with self.ctx.cycle_lock:
                try:
                    await self.run_scan_cycle()
                except ExchangeError as e:
                    logging.error(f"Scan cycle aborted: {e}")
                except Exception:
                    logging.critical("Unexpected error in scan cycle", exc_info=True)
            await asyncio.sleep(interval)
