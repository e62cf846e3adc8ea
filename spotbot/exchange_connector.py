# spotbot/exchange_connector.py
import asyncio
import json
import logging
import random
import time
import uuid
from decimal import Decimal
from typing import Callable, Dict, List, Optional, TypeVar

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from spotbot.config import Config, config as default_config
from spotbot.datastructures import AccountBalance, Currency, Instrument, Order, TradingRules

# Import the synchronous HTTP client from pybit
from pybit.unified_trading import HTTP
from pybit.exceptions import FailedRequestError, InvalidRequestError

# Used when the venue's lot-size metadata cannot be fetched
DEFAULT_TRADING_RULES = TradingRules(
    min_qty=0.00001,
    max_qty=9000000.0,
    step_size=0.00001,
    market_max_qty=1.0,
    min_notional=10.0,
    price_precision=8,
)

TRANSIENT_ERRORS = (FailedRequestError, asyncio.TimeoutError, ConnectionError, OSError)
PARSE_ERRORS = (KeyError, IndexError, TypeError, ValueError)

T = TypeVar("T")


class ExchangeError(Exception):
    """An exchange call failed for good: retries exhausted or the venue rejected it."""


def _decimals(value: str) -> int:
    exponent = Decimal(value).normalize().as_tuple().exponent
    return max(0, -exponent)


def parse_wallet_balance(response: dict) -> AccountBalance:
    """Free balance per coin: cash pools by currency, everything else as assets."""
    balance = AccountBalance(cash={currency: 0.0 for currency in Currency})
    for account in response['result']['list']:
        for coin in account.get('coin', []):
            free = float(coin.get('walletBalance') or 0) - float(coin.get('locked') or 0)
            name = coin['coin']
            if name in Currency.__members__:
                balance.cash[Currency(name)] += free
            elif free > 0:
                balance.assets[name] = balance.assets.get(name, 0.0) + free
    return balance


def parse_trading_rules(instrument_info: dict) -> TradingRules:
    lot = instrument_info['lotSizeFilter']
    max_qty = float(lot['maxOrderQty'])
    tick_size = instrument_info.get('priceFilter', {}).get('tickSize', '0.00000001')
    return TradingRules(
        min_qty=float(lot['minOrderQty']),
        max_qty=max_qty,
        step_size=float(lot['basePrecision']),
        market_max_qty=float(lot.get('maxMarketOrderQty') or max_qty),
        min_notional=float(lot.get('minOrderAmt') or DEFAULT_TRADING_RULES.min_notional),
        price_precision=_decimals(tick_size),
    )


def parse_kline_closes(response: dict) -> List[float]:
    """Closing prices, oldest first (the venue returns newest first)."""
    rows = response['result']['list']
    return [float(row[4]) for row in sorted(rows, key=lambda row: int(row[0]))]


def parse_order_result(response: dict) -> dict:
    result = response['result']
    if not result.get('orderId'):
        raise KeyError('orderId')
    return result


def parse_last_price(response: dict) -> Optional[float]:
    items = response['result']['list']
    return float(items[0]['lastPrice']) if items else None


class ExchangeConnector:
    """
    Handles all network I/O with the exchange.
    - Manages the WebSocket trade feed for market data.
    - Manages authenticated REST API calls via pybit, each under a timeout
      with bounded, linearly backed-off retries.
    """
    def __init__(self, instruments: List[Instrument], output_queue: asyncio.Queue, cfg: Config = default_config):
        self.instruments = {instrument.symbol: instrument for instrument in instruments}
        self.symbols = list(self.instruments)
        self.ws_url = cfg.WEBSOCKET_URL
        self.output_queue = output_queue
        self.mode = cfg.MODE
        self.cfg = cfg
        self.trading_rules: Dict[str, TradingRules] = {}
        self._websocket = None
        self._closing = False
        self._sim_prices: Dict[str, float] = {}
        share = cfg.INITIAL_CAPITAL / len(Currency)
        self._sim_balance = AccountBalance(cash={currency: share for currency in Currency})

        # Initialize the synchronous pybit HTTP client for REST API calls
        if self.mode == 'LIVE':
            self.pybit_session = HTTP(
                testnet=False,
                api_key=cfg.API_KEY,
                api_secret=cfg.API_SECRET,
                timeout=int(cfg.API_TIMEOUT),
            )
            logging.info("Initialized LIVE pybit HTTP session.")
        else:
            self.pybit_session = None
            logging.info("Running in SIMULATION mode. pybit session not created.")

    # --- Request plumbing ---

    async def _call(self, description: str, request: Callable[[], dict]) -> dict:
        """Runs a synchronous pybit call in the executor with timeout and retries."""
        loop = asyncio.get_running_loop()
        retries = self.cfg.API_RETRIES
        for attempt in range(1, retries + 1):
            try:
                response = await asyncio.wait_for(
                    loop.run_in_executor(None, request), timeout=self.cfg.API_TIMEOUT
                )
            except InvalidRequestError as e:
                raise ExchangeError(f"{description} rejected: {e}") from e
            except TRANSIENT_ERRORS as e:
                logging.warning(f"API call {description} failed (attempt {attempt}/{retries}): {e}")
                if attempt == retries:
                    raise ExchangeError(f"{description} failed after {retries} attempts: {e}") from e
                await asyncio.sleep(self.cfg.API_RETRY_BACKOFF * attempt)
                continue

            if not isinstance(response, dict) or response.get('retCode') != 0:
                message = response.get('retMsg') if isinstance(response, dict) else 'empty response'
                raise ExchangeError(f"{description} returned an error: {message}")
            return response
        raise ExchangeError(f"{description} was not attempted")

    async def _fetch(self, description: str, request: Callable[[], dict], parse: Callable[[dict], T]) -> T:
        """_call followed by parse; a response missing expected fields raises ExchangeError."""
        response = await self._call(description, request)
        try:
            return parse(response)
        except PARSE_ERRORS as e:
            raise ExchangeError(f"{description} returned a malformed response: {e!r}") from e

    # --- Market data feed ---

    def _publish(self, message: dict):
        """Pushes onto the bounded feed queue, dropping the oldest message when full."""
        try:
            self.output_queue.put_nowait(message)
        except asyncio.QueueFull:
            self.output_queue.get_nowait()
            self.output_queue.task_done()
            self.output_queue.put_nowait(message)

    async def _subscribe(self, websocket):
        subscription_args = [f"publicTrade.{symbol}" for symbol in self.symbols]
        msg = {"op": "subscribe", "args": subscription_args}
        await websocket.send(json.dumps(msg))
        logging.info(f"Subscribed to: {subscription_args}")

    async def _run_live(self):
        delay = self.cfg.FEED_RECONNECT_DELAY
        while not self._closing:
            try:
                async with connect(self.ws_url, ping_interval=20) as websocket:
                    self._websocket = websocket
                    logging.info(f"Connected to LIVE feed at {self.ws_url}")
                    await self._subscribe(websocket)
                    async for message in websocket:
                        try:
                            self._publish(json.loads(message))
                        except json.JSONDecodeError:
                            logging.error(f"Dropping malformed feed message: {message!r}")
                    if self._closing:
                        break
            except (ConnectionClosed, WebSocketException, OSError) as e:
                if self._closing:
                    break
                logging.error(f"Live connection closed: {e}. Reconnecting in {delay}s...")
            finally:
                self._websocket = None
            if not self._closing:
                await asyncio.sleep(delay)

    def _simulated_price(self, symbol: str) -> float:
        price = self._sim_prices.get(symbol, 100.0 * (1 + random.random()))
        price += random.uniform(-0.001, 0.001) * price
        self._sim_prices[symbol] = price
        return price

    async def _run_simulation(self):
        logging.info("Starting SIMULATED market data feed.")
        while not self._closing:
            for symbol in self.symbols:
                now_ms = int(time.time() * 1000)
                price = self._simulated_price(symbol)
                trade_data = {
                    "topic": f"publicTrade.{symbol}", "type": "snapshot", "ts": now_ms,
                    "data": [{"T": now_ms, "s": symbol, "p": f"{price:.8f}",
                              "v": f"{random.uniform(0.001, 1):.3f}"}],
                }
                self._publish(trade_data)
            await asyncio.sleep(0.5)

    async def run(self):
        if self.mode == 'LIVE':
            await self._run_live()
        else:
            await self._run_simulation()

    async def close(self):
        """Stops the feed loop and closes the live connection, if any."""
        self._closing = True
        if self._websocket is not None:
            await self._websocket.close()
        logging.info("Market data feed closed.")

    def _simulate_fill(self, order: Order) -> dict:
        """Fills at the last simulated price and moves the paper balances."""
        instrument = self.instruments[order.symbol]
        price = self._sim_prices.get(order.symbol) or self._simulated_price(order.symbol)
        cash, assets = self._sim_balance.cash, self._sim_balance.assets
        notional = order.qty * price
        if order.side == 'BUY':
            if notional > cash[instrument.quote]:
                raise ExchangeError(f"Insufficient {instrument.quote.value} for simulated buy of {order.symbol}")
            cash[instrument.quote] -= notional
            assets[instrument.base] = assets.get(instrument.base, 0.0) + order.qty
        else:
            held = assets.get(instrument.base, 0.0)
            if order.qty > held + 1e-12:
                raise ExchangeError(f"Insufficient {instrument.base} for simulated sell of {order.symbol}")
            cash[instrument.quote] += notional
            assets[instrument.base] = max(0.0, held - order.qty)
        return {"orderId": f"sim-{uuid.uuid4().hex[:12]}", "avgPrice": str(price)}

    # --- Authenticated REST API Methods ---

    async def place_order(self, order: Order) -> dict:
        """Places a spot market order; the quantity is always in the base coin."""
        if self.mode != 'LIVE':
            logging.info(f"[SIMULATION] Placing order: {order}")
            return self._simulate_fill(order)

        logging.info(f"Placing LIVE order: {order}")
        # The venue rejects exponent notation such as 9e-05
        qty = format(Decimal(str(order.qty)), 'f')
        result = await self._fetch(
            f"place_order({order.symbol})",
            lambda: self.pybit_session.place_order(
                category="spot",
                symbol=order.symbol,
                side="Buy" if order.side == 'BUY' else "Sell",
                orderType="Market",
                qty=qty,
                marketUnit="baseCoin",
            ),
            parse_order_result,
        )
        logging.info(f"Successfully placed order for {order.symbol}. Order ID: {result['orderId']}")
        return result

    async def get_account_balance(self) -> AccountBalance:
        """Fetches free cash per currency and every non-cash coin held."""
        if self.mode != 'LIVE':
            return AccountBalance(cash=dict(self._sim_balance.cash), assets=dict(self._sim_balance.assets))

        return await self._fetch(
            "get_wallet_balance",
            lambda: self.pybit_session.get_wallet_balance(accountType="UNIFIED"),
            parse_wallet_balance,
        )

    async def get_trading_rules(self, symbol: str) -> TradingRules:
        """Lot-size rules, cached for the process lifetime; safe defaults on failure."""
        if symbol in self.trading_rules:
            return self.trading_rules[symbol]
        if self.mode != 'LIVE':
            return DEFAULT_TRADING_RULES

        try:
            rules = await self._fetch(
                f"get_instruments_info({symbol})",
                lambda: self.pybit_session.get_instruments_info(category="spot", symbol=symbol),
                lambda response: parse_trading_rules(response['result']['list'][0]),
            )
        except ExchangeError as e:
            logging.error(f"Failed to get trading rules for {symbol}: {e}. Using defaults.")
            return DEFAULT_TRADING_RULES

        self.trading_rules[symbol] = rules
        return rules

    async def get_historical_prices(self, symbol: str, limit: int = 100) -> List[float]:
        """Closing prices for the last `limit` candles, oldest first."""
        if self.mode != 'LIVE':
            return [self._simulated_price(symbol) for _ in range(limit)]

        return await self._fetch(
            f"get_kline({symbol})",
            lambda: self.pybit_session.get_kline(
                category="spot", symbol=symbol, interval=self.cfg.HISTORY_INTERVAL, limit=limit
            ),
            parse_kline_closes,
        )

    async def get_last_trade_price(self, symbol: str) -> Optional[float]:
        if self.mode != 'LIVE':
            return self._sim_prices.get(symbol) or self._simulated_price(symbol)

        return await self._fetch(
            f"get_tickers({symbol})",
            lambda: self.pybit_session.get_tickers(category="spot", symbol=symbol),
            parse_last_price,
        )
