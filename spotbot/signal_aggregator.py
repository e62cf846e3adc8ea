# spotbot/signal_aggregator.py
import logging
from typing import List, Optional, Sequence

from spotbot.data_handler import DataHandler
from spotbot.datastructures import Instrument, StrategySignal
from spotbot.strategy_logic import Strategy


class SignalAggregator:
    """Runs every enabled strategy over one instrument's price series."""

    def __init__(self, data_handler: DataHandler, strategies: Sequence[Strategy]):
        self.data_handler = data_handler
        self.strategies = list(strategies)

    async def analyze(self, instrument: Instrument) -> List[StrategySignal]:
        prices = await self.data_handler.get_price_series(instrument.symbol)
        if not prices:
            return []

        signals = []
        for strategy in self.strategies:
            try:
                signal = strategy.evaluate(prices)
            except (ArithmeticError, ValueError) as e:
                logging.error(f"{strategy.strategy_id} failed on {instrument.symbol}: {e}")
                continue
            if signal is not None:
                signals.append(signal)
        return signals

    async def signal_for(self, instrument: Instrument, strategy_id: str) -> Optional[StrategySignal]:
        for signal in await self.analyze(instrument):
            if signal.strategy_id == strategy_id:
                return signal
        return None
