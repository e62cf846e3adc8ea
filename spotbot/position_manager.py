# spotbot/position_manager.py
import logging
from datetime import datetime, timezone
from decimal import ROUND_CEILING
from enum import Enum
from typing import Optional

from spotbot.allocator import CapitalAllocator, meets_minimums, round_to_step, size_quantity
from spotbot.context import EngineContext
from spotbot.data_handler import DataHandler
from spotbot.datastructures import (
    AccountBalance, ExitReason, Instrument, Order, Position, StrategySignal,
)
from spotbot.exchange_connector import ExchangeConnector, ExchangeError
from spotbot.ledger import TradeLedger, TradeRecord
from spotbot.order_executor import OrderExecutor
from spotbot.risk_manager import RiskManager
from spotbot.signal_aggregator import SignalAggregator


class ExitDecision(str, Enum):
    HOLD = "HOLD"
    PROFIT_TARGET = "PROFIT_TARGET"
    STOP_LOSS = "STOP_LOSS"
    CHECK_SIGNAL = "CHECK_SIGNAL"


def exit_decision(pnl_pct: float, hold_seconds: float, min_hold_time: float,
                  profit_target: float, stop_loss: float) -> ExitDecision:
    """
    Price-based exit rules in priority order. Inside the minimum hold window
    only a stop-loss may close the position; a profit target may not.
    """
    if hold_seconds < min_hold_time:
        return ExitDecision.STOP_LOSS if pnl_pct <= -stop_loss else ExitDecision.HOLD
    if pnl_pct >= profit_target:
        return ExitDecision.PROFIT_TARGET
    if pnl_pct <= -stop_loss:
        return ExitDecision.STOP_LOSS
    return ExitDecision.CHECK_SIGNAL


class PositionManager:
    """
    Owns the open positions: at most one per instrument, created only by a
    filled buy and removed only by a filled sell.
    """
    def __init__(self, ctx: EngineContext, data_handler: DataHandler, connector: ExchangeConnector,
                 executor: OrderExecutor, aggregator: SignalAggregator, allocator: CapitalAllocator,
                 risk: RiskManager, ledger: TradeLedger):
        self.ctx = ctx
        self.data_handler = data_handler
        self.connector = connector
        self.executor = executor
        self.aggregator = aggregator
        self.allocator = allocator
        self.risk = risk
        self.ledger = ledger

    @property
    def positions(self):
        return self.ctx.positions

    def position_for_asset(self, asset: str) -> Optional[Position]:
        for position in self.positions.values():
            if position.instrument.base == asset:
                return position
        return None

    def _record(self, side: str, symbol: str, qty: float, price: float, order_id: str,
                strategy: str, pnl: float = 0.0):
        self.ledger.record(TradeRecord(
            timestamp=datetime.fromtimestamp(self.ctx.now(), tz=timezone.utc).isoformat(),
            side=side,
            symbol=symbol,
            quantity=qty,
            price=price,
            usd_value=qty * price,
            order_id=order_id,
            strategy=strategy,
            pnl=pnl,
        ))

    # --- Entries ---

    def entry_rejection(self, instrument: Instrument, strategy_id: str) -> Optional[str]:
        """Why a new position may not be opened, or None when every cap allows it."""
        limits = self.ctx.config.RISK
        if instrument.symbol in self.positions:
            return f"position already open for {instrument.symbol}"
        if len(self.positions) >= limits.max_open_positions:
            return "max open positions reached"
        strategy_positions = sum(1 for p in self.positions.values() if p.strategy_id == strategy_id)
        if strategy_positions >= limits.max_positions_per_strategy:
            return f"max positions reached for {strategy_id}"
        if self.allocator.currency_positions(instrument) >= limits.max_positions_per_currency:
            return f"max positions reached for {instrument.quote.value}"
        return None

    async def try_enter(self, instrument: Instrument, signal: StrategySignal,
                        balance: AccountBalance, notional_cap: Optional[float] = None) -> bool:
        """
        Attempts one entry on a buy signal. Returns True once the signal cleared
        the caps and sizing checks (an order was attempted), False when it was
        filtered out and the caller may consider another signal.
        """
        rejection = self.entry_rejection(instrument, signal.strategy_id)
        if rejection:
            logging.debug(f"Skipping {instrument.symbol} ({signal.strategy_id}): {rejection}")
            return False
        if self.risk.is_halted():
            return False

        trade_size = self.allocator.trade_size(instrument, balance)
        if notional_cap is not None:
            trade_size = min(trade_size, notional_cap)
        if not self.allocator.can_afford(instrument, balance, trade_size):
            logging.debug(f"Skipping {instrument.symbol} ({signal.strategy_id}): trade size ${trade_size:.2f} too small")
            return False

        logging.info(f"BUY SIGNAL: {instrument.symbol} ({signal.strategy_id}) - {signal.indicators}",
                     extra={"context": {"symbol": instrument.symbol, "strategy": signal.strategy_id,
                                        "indicators": signal.indicators}})
        position = await self.open_position(instrument, signal.strategy_id, trade_size)
        if position is not None:
            spent = position.quantity * position.avg_entry_price
            balance.cash[instrument.quote] = max(0.0, balance.available(instrument.quote) - spent)
        return True

    async def open_position(self, instrument: Instrument, strategy_id: str,
                            notional: float) -> Optional[Position]:
        symbol = instrument.symbol
        price = await self.data_handler.current_price(symbol)
        if not price:
            logging.error(f"Buy order failed for {symbol}: no current price")
            return None

        rules = await self.connector.get_trading_rules(symbol)
        quantity = size_quantity(notional, price, rules)
        if not meets_minimums(quantity, price, rules):
            logging.warning(f"Skipping buy for {symbol}: {quantity} @ ${price:.2f} is below the exchange minimum")
            return None

        logging.info(f"Executing BUY: {symbol} - {quantity} @ ${price:.2f} ({strategy_id})")
        try:
            fill = await self.executor.execute(Order(symbol, 'BUY', quantity, tag=strategy_id), price)
        except ExchangeError as e:
            logging.error(f"Buy order failed for {symbol}: {e}")
            return None

        position = Position(
            instrument=instrument,
            strategy_id=strategy_id,
            quantity=fill.qty,
            avg_entry_price=fill.price,
            entry_timestamp=self.ctx.now(),
        )
        self.positions[symbol] = position
        self._record('BUY', symbol, fill.qty, fill.price, fill.order_id, strategy_id)
        return position

    # --- Exits ---

    async def check_exit(self, symbol: str) -> Optional[ExitReason]:
        """Evaluates one open position; returns the reason if it was closed."""
        position = self.positions.get(symbol)
        if position is None:
            return None
        price = await self.data_handler.current_price(symbol)
        if not price:
            return None

        params = self.ctx.config.strategy_params[position.strategy_id]
        pnl_pct = position.pnl_pct(price)
        decision = exit_decision(
            pnl_pct,
            self.ctx.now() - position.entry_timestamp,
            self.ctx.config.RISK.min_hold_time,
            params.profit_target,
            params.stop_loss,
        )

        if decision is ExitDecision.HOLD:
            return None
        if decision is ExitDecision.CHECK_SIGNAL:
            signal = await self.aggregator.signal_for(position.instrument, position.strategy_id)
            if signal is None or not signal.sell:
                return None
            reason = ExitReason.SIGNAL
            logging.info(f"Sell signal for {symbol} ({position.strategy_id})")
        elif decision is ExitDecision.STOP_LOSS:
            reason = ExitReason.STOP_LOSS
            logging.warning(f"Stop loss triggered for {symbol} ({position.strategy_id}): {pnl_pct:.2f}%")
        else:
            reason = ExitReason.PROFIT_TARGET
            logging.info(f"Profit target hit for {symbol} ({position.strategy_id}): {pnl_pct:.2f}%")

        pnl = await self.close_position(symbol, reason, price)
        return reason if pnl is not None else None

    async def close_position(self, symbol: str, reason: ExitReason,
                             price: Optional[float] = None) -> Optional[float]:
        """Sells the whole position and settles it. Returns realised P&L, or None on failure."""
        position = self.positions.get(symbol)
        if position is None:
            return None
        if price is None:
            price = await self.data_handler.current_price(symbol)
            if not price:
                logging.error(f"Sell order failed for {symbol}: no current price")
                return None

        rules = await self.connector.get_trading_rules(symbol)
        quantity = round_to_step(position.quantity, rules.step_size)
        if quantity <= 0:
            logging.error(f"Sell order failed for {symbol}: quantity {position.quantity} rounds to zero")
            return None

        tag = f"{position.strategy_id}_{reason.value}"
        expected_pnl = (price - position.avg_entry_price) * quantity
        logging.info(
            f"Executing SELL: {symbol} - {quantity} @ ${price:.2f} ({position.strategy_id} - {reason.value})"
            f" - P&L: ${expected_pnl:.2f} ({position.pnl_pct(price):.2f}%)"
        )
        try:
            fill = await self.executor.execute(Order(symbol, 'SELL', quantity, tag=tag), price)
        except ExchangeError as e:
            logging.error(f"Sell order failed for {symbol}: {e}")
            return None

        pnl = (fill.price - position.avg_entry_price) * quantity
        self.risk.record_close(position.strategy_id, pnl)
        self._record('SELL', symbol, quantity, fill.price, fill.order_id, tag, pnl)
        del self.positions[symbol]
        return pnl

    async def liquidate(self, instrument: Instrument, quantity: float, price: float,
                        available: float, tag: str) -> bool:
        """
        Market-sells coins that back no position (pre-existing holdings). The
        quantity is bumped to the minimum notional when `available` allows.
        """
        symbol = instrument.symbol
        rules = await self.connector.get_trading_rules(symbol)
        quantity = round_to_step(min(quantity, available), rules.step_size)
        if quantity * price < rules.min_notional:
            needed = round_to_step(rules.min_notional / price, rules.step_size, ROUND_CEILING)
            quantity = min(needed, round_to_step(available, rules.step_size))
        if not meets_minimums(quantity, price, rules):
            logging.warning(f"Skipping sell of {symbol}: {quantity} @ ${price:.2f} is below the exchange minimum")
            return False

        logging.info(f"Executing SELL: {symbol} - {quantity} @ ${price:.2f} ({tag})")
        try:
            fill = await self.executor.execute(Order(symbol, 'SELL', quantity, tag=tag), price)
        except ExchangeError as e:
            logging.error(f"Sell order failed for {symbol}: {e}")
            return False
        self._record('SELL', symbol, quantity, fill.price, fill.order_id, tag)
        return True
