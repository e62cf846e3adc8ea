# spotbot/datastructures.py
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Literal, Optional


class Currency(str, Enum):
    """Cash currencies the venue quotes spot pairs in."""
    USDT = "USDT"
    USDC = "USDC"


class ExitReason(str, Enum):
    PROFIT_TARGET = "PROFIT_TARGET"
    STOP_LOSS = "STOP_LOSS"
    SIGNAL = "SIGNAL"
    REBALANCE = "REBALANCE"


@dataclass(frozen=True)
class Instrument:
    """A tradable spot pair with an explicit quote-currency tag."""
    symbol: str
    base: str
    quote: Currency

    @classmethod
    def parse(cls, pair: str) -> "Instrument":
        """Builds an instrument from a 'BASE/QUOTE' string such as 'BTC/USDT'."""
        base, sep, quote = pair.strip().upper().partition('/')
        if not sep or not base:
            raise ValueError(f"Instrument must be given as BASE/QUOTE, got {pair!r}")
        return cls(symbol=f"{base}{quote}", base=base, quote=Currency(quote))


@dataclass(frozen=True)
class StrategySignal:
    """One strategy's verdict for one instrument at one instant."""
    strategy_id: str
    buy: bool
    sell: bool
    profit_target_pct: float
    stop_loss_pct: float
    indicators: Dict[str, float] = field(default_factory=dict)


@dataclass
class Position:
    """An open spot position, owned by the PositionManager."""
    instrument: Instrument
    strategy_id: str
    quantity: float
    avg_entry_price: float
    entry_timestamp: float

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    def pnl_pct(self, current_price: float) -> float:
        return (current_price - self.avg_entry_price) / self.avg_entry_price * 100


@dataclass
class RiskState:
    daily_pnl: float = 0.0
    consecutive_losses: int = 0
    last_reset_date: Optional[date] = None
    halted: bool = False


@dataclass
class StrategyStats:
    trade_count: int = 0
    win_count: int = 0
    cumulative_pnl: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.win_count / self.trade_count * 100 if self.trade_count else 0.0


@dataclass(frozen=True)
class TradingRules:
    """Exchange lot-size metadata for one instrument."""
    min_qty: float
    max_qty: float
    step_size: float
    market_max_qty: float
    min_notional: float
    price_precision: int = 8


@dataclass
class AccountBalance:
    """Free balances: the cash pools plus any non-cash coins held."""
    cash: Dict[Currency, float] = field(default_factory=dict)
    assets: Dict[str, float] = field(default_factory=dict)

    @property
    def total_cash(self) -> float:
        return sum(self.cash.values())

    def available(self, currency: Currency) -> float:
        return self.cash.get(currency, 0.0)


@dataclass(frozen=True)
class Holding:
    asset: str
    instrument: Instrument
    quantity: float
    price: float

    @property
    def value(self) -> float:
        return self.quantity * self.price


@dataclass(frozen=True)
class PortfolioSnapshot:
    cash_by_currency: Dict[Currency, float]
    holdings: Dict[str, Holding]
    total_value: float

    @property
    def cash(self) -> float:
        return sum(self.cash_by_currency.values())


@dataclass
class Order:
    """Represents a concrete market order to be executed."""
    symbol: str
    side: Literal['BUY', 'SELL']
    qty: float
    order_type: Literal['MARKET'] = 'MARKET'
    # Distinguishes order intent in logs (strategy id, exit reason)
    tag: Optional[str] = None


@dataclass
class FillConfirmation:
    """Represents a confirmed trade fill from the exchange."""
    symbol: str
    order_id: str
    side: Literal['BUY', 'SELL']
    qty: float
    price: float
    tag: Optional[str] = None


@dataclass
class PriceUpdate:
    """Represents the latest price update for a symbol."""
    symbol: str
    price: float
    timestamp: float
