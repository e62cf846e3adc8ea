# spotbot/data_handler.py
import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional

from spotbot.config import Config, config as default_config
from spotbot.datastructures import PriceUpdate
from spotbot.exchange_connector import ExchangeConnector, ExchangeError


class DataHandler:
    """
    Owns the rolling price series per symbol. The feed task is the only writer;
    the scan cycle reads point-in-time snapshots and tolerates staleness.
    """
    def __init__(self, input_queue: asyncio.Queue, connector: ExchangeConnector,
                 cfg: Config = default_config):
        self.input_queue = input_queue
        self.connector = connector
        self.history_size = cfg.PRICE_HISTORY_SIZE
        self.min_points = cfg.MIN_HISTORY_POINTS
        self.price_history: Dict[str, Deque[float]] = {}
        self.latest: Dict[str, PriceUpdate] = {}

    def register_symbol(self, symbol: str):
        self.price_history.setdefault(symbol, deque(maxlen=self.history_size))

    def seed(self, symbol: str, prices: List[float]):
        """Replaces a symbol's buffer with historical prices (oldest first)."""
        self.price_history[symbol] = deque(prices, maxlen=self.history_size)

    def get_prices(self, symbol: str) -> List[float]:
        return list(self.price_history.get(symbol, ()))

    def _process_tick(self, tick_data: dict):
        """Processes a single trade message from the WebSocket."""
        topic = tick_data.get('topic', '')
        if not topic.startswith('publicTrade.'):
            return  # subscription acks, pongs
        symbol = topic.split('.')[-1]
        if symbol not in self.price_history:
            return

        try:
            trades = sorted(
                ((float(trade['T']) / 1000, float(trade['p'])) for trade in tick_data.get('data', [])),
                key=lambda trade: trade[0],
            )
        except (KeyError, TypeError, ValueError) as e:
            logging.error(f"Error processing tick for {symbol}: {tick_data}. Error: {e}")
            return

        for timestamp, price in trades:
            last = self.latest.get(symbol)
            if last is not None and timestamp < last.timestamp:
                continue
            self.price_history[symbol].append(price)
            self.latest[symbol] = PriceUpdate(symbol=symbol, price=price, timestamp=timestamp)

    async def preload(self, symbols: List[str], pause: float = 0.5):
        """Seeds every symbol's buffer from historical closes before the feed starts."""
        for symbol in symbols:
            self.register_symbol(symbol)
            try:
                prices = await self.connector.get_historical_prices(symbol, self.history_size)
            except ExchangeError as e:
                logging.error(f"Failed to load historical data for {symbol}: {e}")
                prices = []
            if len(prices) >= self.min_points:
                self.seed(symbol, prices)
                logging.info(f"Loaded {len(prices)} candles for {symbol}")
            else:
                logging.warning(f"Failed to load sufficient data for {symbol}")
            await asyncio.sleep(pause)

    async def get_price_series(self, symbol: str) -> Optional[List[float]]:
        """
        The live buffer when it holds enough points, else a fresh historical
        fetch (which also re-seeds the buffer). None when neither suffices.
        """
        prices = self.get_prices(symbol)
        if len(prices) >= self.min_points:
            return prices
        try:
            prices = await self.connector.get_historical_prices(symbol, self.history_size)
        except ExchangeError as e:
            logging.error(f"Failed to get historical prices for {symbol}: {e}")
            return None
        if len(prices) < self.min_points:
            logging.warning(f"Insufficient price data for {symbol}")
            return None
        self.seed(symbol, prices)
        return prices

    async def current_price(self, symbol: str) -> Optional[float]:
        """Latest feed price, falling back to the REST ticker."""
        update = self.latest.get(symbol)
        if update is not None:
            return update.price
        try:
            return await self.connector.get_last_trade_price(symbol)
        except ExchangeError as e:
            logging.error(f"Failed to get current price for {symbol}: {e}")
            return None

    async def run(self):
        """Main loop draining the feed queue into the price buffers."""
        logging.info("DataHandler is running.")
        while True:
            tick = await self.input_queue.get()
            self._process_tick(tick)
            self.input_queue.task_done()
