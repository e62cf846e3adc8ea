# spotbot/bot_manager.py
import asyncio
import logging
from typing import Optional, Set

from spotbot.allocator import CapitalAllocator
from spotbot.config import Config, config as default_config
from spotbot.context import EngineContext
from spotbot.data_handler import DataHandler
from spotbot.exchange_connector import ExchangeConnector, ExchangeError
from spotbot.ledger import TradeLedger
from spotbot.order_executor import OrderExecutor
from spotbot.orchestrator import ScanOrchestrator
from spotbot.portfolio_manager import PortfolioManager
from spotbot.position_manager import PositionManager
from spotbot.risk_manager import RiskManager
from spotbot.signal_aggregator import SignalAggregator
from spotbot.strategy_logic import build_strategies


class StartupError(Exception):
    """The bot cannot start trading: account connectivity is missing."""


class BotManager:
    """
    Builds the engine from configuration and runs its tasks: the market data
    feed, the data handler, the scan loop and the rebalance loop.
    """
    def __init__(self, cfg: Config = default_config, ctx: Optional[EngineContext] = None,
                 connector: Optional[ExchangeConnector] = None):
        self.cfg = cfg
        self.ctx = ctx or EngineContext(config=cfg)
        self.market_data_q = asyncio.Queue(maxsize=cfg.FEED_QUEUE_SIZE)

        self.connector = connector or ExchangeConnector(cfg.INSTRUMENTS, self.market_data_q, cfg)
        self.data_handler = DataHandler(self.market_data_q, self.connector, cfg)
        self.aggregator = SignalAggregator(self.data_handler, build_strategies(cfg))
        self.risk = RiskManager(self.ctx)
        self.ledger = TradeLedger(cfg.TRADE_LOG_FILE if cfg.ENABLE_TRADE_LOGGING else None,
                                  cfg.LEDGER_DECIMALS)
        self.positions = PositionManager(
            self.ctx, self.data_handler, self.connector, OrderExecutor(self.connector),
            self.aggregator, CapitalAllocator(self.ctx), self.risk, self.ledger,
        )
        self.orchestrator = ScanOrchestrator(
            self.ctx, self.connector, self.risk, self.positions, self.aggregator
        )
        self.portfolio_manager = PortfolioManager(
            self.ctx, self.connector, self.data_handler, self.aggregator, self.positions, self.risk
        )
        self.running_tasks: Set[asyncio.Task] = set()
        self.started = False
        self.stopping = False

    async def startup(self):
        """Verifies account connectivity and seeds price history. Raises StartupError."""
        try:
            balance = await self.connector.get_account_balance()
        except ExchangeError as e:
            raise StartupError(f"Failed to connect to exchange API: {e}") from e

        symbols = [instrument.symbol for instrument in self.cfg.INSTRUMENTS]
        logging.info(f"Connected to exchange in {self.cfg.MODE} mode")
        logging.info(f"Balance: ${balance.total_cash:.2f} "
                     f"({', '.join(f'{c.value} {v:.2f}' for c, v in balance.cash.items())})")
        logging.info(f"Monitoring pairs: {', '.join(symbols)}")
        logging.info(f"Scan interval: {self.cfg.SCAN_INTERVAL} seconds")

        await self.data_handler.preload(symbols, pause=self.cfg.SCAN_PAUSE_SECONDS)
        loaded = sum(1 for s in symbols if len(self.data_handler.get_prices(s)) >= self.cfg.MIN_HISTORY_POINTS)
        logging.info(f"Historical data loaded for {loaded} pairs")

    async def run(self):
        await self.startup()
        if self.stopping:
            logging.info("Shutdown requested during startup. Not starting service tasks.")
            return

        services = [
            self.connector.run(),
            self.data_handler.run(),
            self.orchestrator.run(),
        ]
        if self.cfg.PORTFOLIO.enabled:
            services.append(self.portfolio_manager.run())

        for coro in services:
            task = asyncio.create_task(coro)
            self.running_tasks.add(task)
            task.add_done_callback(self.running_tasks.discard)

        self.started = True
        logging.info(f"Bot started successfully with {len(self.running_tasks)} service tasks.")
        try:
            await asyncio.gather(*self.running_tasks)
        except asyncio.CancelledError:
            logging.info("Main task group cancelled. Bot is shutting down.")

    async def shutdown(self):
        """Logs the final tally, closes the feed and cancels the service tasks."""
        self.stopping = True
        logging.info(f"Final daily P&L: ${self.ctx.risk_state.daily_pnl:.2f}")
        logging.info(f"Open positions: {len(self.ctx.positions)}")
        await self.connector.close()
        for task in list(self.running_tasks):
            task.cancel()
        await asyncio.gather(*self.running_tasks, return_exceptions=True)
        self.started = False

    def status(self) -> dict:
        state = self.ctx.risk_state
        return {
            "mode": self.cfg.MODE,
            "running": self.started,
            "halted": state.halted,
            "daily_pnl": round(state.daily_pnl, 2),
            "consecutive_losses": state.consecutive_losses,
            "positions": {
                symbol: {
                    "strategy": p.strategy_id,
                    "quantity": p.quantity,
                    "avg_entry_price": p.avg_entry_price,
                    "entry_timestamp": p.entry_timestamp,
                }
                for symbol, p in list(self.ctx.positions.items())
            },
            "strategies": {
                strategy_id: {
                    "trades": stats.trade_count,
                    "wins": stats.win_count,
                    "pnl": round(stats.cumulative_pnl, 2),
                }
                for strategy_id, stats in list(self.ctx.strategy_stats.items())
            },
        }
