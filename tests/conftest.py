import asyncio
import sys
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

# Make the project root importable when running pytest without installing
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from spotbot.allocator import CapitalAllocator
from spotbot.config import Config, parse_instruments
from spotbot.context import EngineContext
from spotbot.data_handler import DataHandler
from spotbot.datastructures import (
    AccountBalance, Currency, Position, PriceUpdate, StrategySignal, TradingRules,
)
from spotbot.ledger import TradeLedger
from spotbot.order_executor import OrderExecutor
from spotbot.position_manager import PositionManager
from spotbot.risk_manager import RiskManager

RULES = TradingRules(
    min_qty=0.001,
    max_qty=1000.0,
    step_size=0.001,
    market_max_qty=100.0,
    min_notional=5.0,
    price_precision=2,
)


class FakeClock:
    """A controllable replacement for time.time."""

    def __init__(self, start: float = datetime(2026, 10, 19, 12, 0).timestamp()):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float):
        self.t += seconds


def make_signal(strategy_id="ema_crossover", buy=False, sell=False,
                profit_target=3.5, stop_loss=2.0) -> StrategySignal:
    return StrategySignal(
        strategy_id=strategy_id,
        buy=buy,
        sell=sell,
        profit_target_pct=profit_target,
        stop_loss_pct=stop_loss,
    )


def make_balance(usdt=1000.0, usdc=0.0, **assets) -> AccountBalance:
    return AccountBalance(cash={Currency.USDT: usdt, Currency.USDC: usdc}, assets=dict(assets))


@pytest.fixture
def make_config():
    def _make(**overrides):
        options = dict(
            MODE='SIMULATION',
            SCAN_PAUSE_SECONDS=0.0,
            API_RETRY_BACKOFF=0.0,
            INSTRUMENTS=parse_instruments("BTC/USDT,ETH/USDT,SOL/USDT,BTC/USDC"),
            ENABLE_TRADE_LOGGING=False,
        )
        options.update(overrides)
        return Config(**options)
    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def connector():
    connector = MagicMock()
    connector.get_account_balance = AsyncMock(return_value=make_balance())
    connector.get_trading_rules = AsyncMock(return_value=RULES)
    connector.get_historical_prices = AsyncMock(return_value=[])
    connector.get_last_trade_price = AsyncMock(return_value=None)
    connector.place_order = AsyncMock(return_value={"orderId": "42"})
    return connector


def build_engine(cfg, clock, connector, ledger=None):
    ctx = EngineContext(config=cfg, clock=clock)
    data_handler = DataHandler(asyncio.Queue(), connector, cfg)
    aggregator = MagicMock()
    aggregator.analyze = AsyncMock(return_value=[])
    aggregator.signal_for = AsyncMock(return_value=None)
    risk = RiskManager(ctx)
    allocator = CapitalAllocator(ctx)
    ledger = ledger or TradeLedger(None)
    positions = PositionManager(
        ctx, data_handler, connector, OrderExecutor(connector), aggregator, allocator, risk, ledger
    )
    engine = SimpleNamespace(
        cfg=cfg, ctx=ctx, clock=clock, connector=connector, data_handler=data_handler,
        aggregator=aggregator, risk=risk, allocator=allocator, ledger=ledger, positions=positions,
    )
    engine.instrument = lambda symbol: next(i for i in cfg.INSTRUMENTS if i.symbol == symbol)
    engine.set_price = lambda symbol, price: data_handler.latest.__setitem__(
        symbol, PriceUpdate(symbol=symbol, price=price, timestamp=clock())
    )
    return engine


@pytest.fixture
def engine(make_config, clock, connector):
    return build_engine(make_config(), clock, connector)


def add_position(engine, symbol, strategy_id="ema_crossover", quantity=1.0,
                 entry_price=100.0, age=0.0) -> Position:
    position = Position(
        instrument=engine.instrument(symbol),
        strategy_id=strategy_id,
        quantity=quantity,
        avg_entry_price=entry_price,
        entry_timestamp=engine.clock() - age,
    )
    engine.ctx.positions[symbol] = position
    return position
