# spotbot/allocator.py
import logging
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from spotbot.config import RiskLimits
from spotbot.context import EngineContext
from spotbot.datastructures import AccountBalance, Instrument, TradingRules


def round_to_step(quantity: float, step_size: float, rounding: str = ROUND_FLOOR) -> float:
    """Quantises a quantity onto the step-size grid (downward by default)."""
    if step_size <= 0:
        return quantity
    step = Decimal(str(step_size))
    steps = (Decimal(str(quantity)) / step).to_integral_value(rounding=rounding)
    return float(steps * step)


def size_quantity(notional: float, price: float, rules: TradingRules) -> float:
    """
    Converts a USD notional into an order quantity legal under `rules`.

    The result is on the step grid, at least `min_qty`, at most the market
    lot cap, and worth at least `min_notional` whenever the cap allows it.
    When it does not, the capped quantity is returned and the caller decides.
    """
    if price <= 0 or notional <= 0:
        return 0.0

    quantity = round_to_step(notional / price, rules.step_size)
    if quantity < rules.min_qty:
        quantity = rules.min_qty
    if quantity * price < rules.min_notional:
        quantity = max(round_to_step(rules.min_notional / price, rules.step_size, ROUND_CEILING),
                       rules.min_qty)

    cap = min(rules.max_qty, rules.market_max_qty)
    if quantity > cap:
        logging.warning(f"Quantity {quantity} exceeds market lot max {cap}, reducing")
        quantity = cap
    return round_to_step(quantity, rules.step_size)


def meets_minimums(quantity: float, price: float, rules: TradingRules) -> bool:
    return quantity > 0 and quantity >= rules.min_qty and quantity * price >= rules.min_notional


class CapitalAllocator:
    """Splits each cash pool across the positions that currency may still open."""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx

    @property
    def limits(self) -> RiskLimits:
        return self.ctx.config.RISK

    def currency_positions(self, instrument: Instrument) -> int:
        return sum(1 for p in self.ctx.positions.values() if p.instrument.quote == instrument.quote)

    def trade_size(self, instrument: Instrument, balance: AccountBalance) -> float:
        available = balance.available(instrument.quote)
        free_slots = self.limits.max_positions_per_currency - self.currency_positions(instrument)
        if free_slots <= 0 or available <= 0:
            return 0.0
        return min(available * self.limits.max_position_size, available / free_slots)

    def can_afford(self, instrument: Instrument, balance: AccountBalance, trade_size: float) -> bool:
        minimum = self.limits.min_trade_size
        return trade_size >= minimum and balance.available(instrument.quote) >= minimum

