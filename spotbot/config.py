# spotbot/config.py
import os
import logging
from dataclasses import dataclass, fields
from typing import Dict, List, Union

from dotenv import load_dotenv

from spotbot.datastructures import Instrument

# Load environment variables from a .env file for local development
load_dotenv()

RSI_MOMENTUM = "rsi_momentum"
MACD = "macd"
BOLLINGER_BANDS = "bollinger_bands"
EMA_CROSSOVER = "ema_crossover"

DEFAULT_PAIRS = "BTC/USDT,ETH/USDT,SOL/USDT,AVAX/USDT,BTC/USDC,ETH/USDC,SOL/USDC,AVAX/USDC"


@dataclass(frozen=True)
class RsiMomentumParams:
    enabled: bool = True
    rsi_period: int = 14
    oversold: float = 40.0
    overbought: float = 70.0
    momentum_period: int = 10
    momentum_threshold: float = 2.0
    profit_target: float = 3.0
    stop_loss: float = 2.0


@dataclass(frozen=True)
class MacdParams:
    enabled: bool = True
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9
    profit_target: float = 4.0
    stop_loss: float = 2.5


@dataclass(frozen=True)
class BollingerParams:
    # Overtraded badly in live runs, off unless asked for
    enabled: bool = False
    period: int = 20
    std_dev: float = 2.0
    profit_target: float = 2.5
    stop_loss: float = 1.5


@dataclass(frozen=True)
class EmaCrossoverParams:
    enabled: bool = True
    fast_period: int = 9
    slow_period: int = 21
    profit_target: float = 3.5
    stop_loss: float = 2.0


@dataclass(frozen=True)
class RiskLimits:
    max_position_size: float = 0.20      # fraction of a currency pool per trade
    min_trade_size: float = 10.0         # USD
    max_daily_loss: float = 100.0        # USD
    max_open_positions: int = 8
    max_positions_per_strategy: int = 4
    max_positions_per_currency: int = 4
    min_hold_time: float = 300.0         # seconds
    max_consecutive_losses: int = 3


@dataclass(frozen=True)
class PortfolioBands:
    enabled: bool = True
    min_cash_reserve: float = 0.20
    target_cash_reserve: float = 0.25
    max_cash_reserve: float = 0.40
    rebalance_interval: float = 300.0    # seconds
    min_position_size: float = 0.05
    max_position_size: float = 0.30
    sell_on_signal: bool = True


StrategyParams = Union[RsiMomentumParams, MacdParams, BollingerParams, EmaCrossoverParams]


def _cast(raw: str, kind: type):
    if kind is bool:
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    return kind(raw)


def _from_env(cls, prefix: str):
    """Builds an option group, letting `<PREFIX>_<FIELD>` variables override each default."""
    values = {}
    for f in fields(cls):
        raw = os.getenv(f"{prefix}_{f.name.upper()}")
        if raw is not None:
            values[f.name] = _cast(raw, type(f.default))
    return cls(**values)


def parse_instruments(pairs: str) -> List[Instrument]:
    return [Instrument.parse(pair) for pair in pairs.split(',') if pair.strip()]


class Config:
    """Main configuration class loading settings from environment variables."""

    def __init__(self, **overrides):
        # --- Exchange Credentials ---
        self.API_KEY = os.getenv('BYBIT_API_KEY')
        self.API_SECRET = os.getenv('BYBIT_API_SECRET')

        # --- Bot Mode ---
        # Set to 'LIVE' to use real exchange connections
        self.MODE = os.getenv('MODE', 'SIMULATION')
        self.INITIAL_CAPITAL = float(os.getenv('INITIAL_CAPITAL', 1000.0))

        # --- Endpoints ---
        self.WEBSOCKET_URL = os.getenv('WEBSOCKET_URL', "wss://stream.bybit.com/v5/public/spot")
        self.API_TIMEOUT = float(os.getenv('API_TIMEOUT', 10.0))
        self.API_RETRIES = int(os.getenv('API_RETRIES', 3))
        self.API_RETRY_BACKOFF = float(os.getenv('API_RETRY_BACKOFF', 1.0))

        # --- Universe & Market Data ---
        self.INSTRUMENTS = parse_instruments(os.getenv('TRADING_PAIRS', DEFAULT_PAIRS))
        self.PRICE_HISTORY_SIZE = int(os.getenv('PRICE_HISTORY_SIZE', 100))
        self.MIN_HISTORY_POINTS = int(os.getenv('MIN_HISTORY_POINTS', 50))
        self.HISTORY_INTERVAL = os.getenv('HISTORY_INTERVAL', '60')
        self.FEED_RECONNECT_DELAY = float(os.getenv('FEED_RECONNECT_DELAY', 5.0))
        self.FEED_QUEUE_SIZE = int(os.getenv('FEED_QUEUE_SIZE', 10000))

        # --- Timing ---
        self.SCAN_INTERVAL = float(os.getenv('SCAN_INTERVAL', 30.0))
        self.SCAN_PAUSE_SECONDS = float(os.getenv('SCAN_PAUSE_SECONDS', 0.5))

        # --- Strategies, Risk & Portfolio ---
        self.RSI_MOMENTUM = _from_env(RsiMomentumParams, 'RSI_MOMENTUM')
        self.MACD = _from_env(MacdParams, 'MACD')
        self.BOLLINGER_BANDS = _from_env(BollingerParams, 'BOLLINGER_BANDS')
        self.EMA_CROSSOVER = _from_env(EmaCrossoverParams, 'EMA_CROSSOVER')
        self.RISK = _from_env(RiskLimits, 'RISK')
        self.PORTFOLIO = _from_env(PortfolioBands, 'PORTFOLIO')

        # --- Logging ---
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.LOG_FILE = os.getenv('LOG_FILE', 'bot.log')
        self.TRADE_LOG_FILE = os.getenv('TRADE_LOG_FILE', 'trades.csv')
        self.ENABLE_TRADE_LOGGING = _cast(os.getenv('ENABLE_TRADE_LOGGING', 'true'), bool)
        self.LEDGER_DECIMALS = int(os.getenv('LEDGER_DECIMALS', 8))

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown config option: {key}")
            setattr(self, key, value)

    @property
    def strategy_params(self) -> Dict[str, StrategyParams]:
        return {
            RSI_MOMENTUM: self.RSI_MOMENTUM,
            MACD: self.MACD,
            BOLLINGER_BANDS: self.BOLLINGER_BANDS,
            EMA_CROSSOVER: self.EMA_CROSSOVER,
        }

    def validate(self):
        """Raises ValueError on a configuration the engine cannot run with."""
        if not self.INSTRUMENTS:
            raise ValueError("TRADING_PAIRS must name at least one instrument")
        if self.PRICE_HISTORY_SIZE < 100:
            raise ValueError("PRICE_HISTORY_SIZE must be at least 100")
        bands = self.PORTFOLIO
        if not bands.min_cash_reserve <= bands.target_cash_reserve <= bands.max_cash_reserve:
            raise ValueError("Cash reserve bands must satisfy min <= target <= max")
        if self.MODE == 'LIVE' and (not self.API_KEY or not self.API_SECRET):
            logging.warning("API_KEY or API_SECRET not found in environment variables.")


config = Config()
