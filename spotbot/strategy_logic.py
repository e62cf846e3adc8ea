# spotbot/strategy_logic.py
import logging
from typing import List, Optional, Sequence

from spotbot import indicators
from spotbot.config import (
    BOLLINGER_BANDS, EMA_CROSSOVER, MACD, RSI_MOMENTUM,
    BollingerParams, Config, EmaCrossoverParams, MacdParams, RsiMomentumParams,
)
from spotbot.datastructures import StrategySignal


class Strategy:
    """
    A signal policy over a price series. Subclasses implement `evaluate`,
    returning None whenever an indicator they need lacks history.
    """
    strategy_id: str = ""

    def __init__(self, params):
        self.params = params

    def evaluate(self, prices: Sequence[float]) -> Optional[StrategySignal]:
        raise NotImplementedError

    def _signal(self, buy: bool, sell: bool, **values) -> StrategySignal:
        return StrategySignal(
            strategy_id=self.strategy_id,
            buy=bool(buy),
            sell=bool(sell),
            profit_target_pct=self.params.profit_target,
            stop_loss_pct=self.params.stop_loss,
            indicators=values,
        )


class RsiMomentumStrategy(Strategy):
    """Buys oversold dips that already show positive momentum."""
    strategy_id = RSI_MOMENTUM
    params: RsiMomentumParams

    def evaluate(self, prices):
        rsi = indicators.rsi(prices, self.params.rsi_period)
        momentum = indicators.momentum(prices, self.params.momentum_period)
        if rsi is None or momentum is None:
            return None
        return self._signal(
            buy=rsi < self.params.oversold and momentum > self.params.momentum_threshold,
            sell=rsi > self.params.overbought,
            rsi=rsi,
            momentum=momentum,
        )


class MacdStrategy(Strategy):
    strategy_id = MACD
    params: MacdParams

    def evaluate(self, prices):
        result = indicators.macd(
            prices, self.params.fast_period, self.params.slow_period, self.params.signal_period
        )
        if result is None or result.signal is None:
            return None
        return self._signal(
            buy=result.histogram > 0 and result.macd > result.signal,
            sell=result.histogram < 0 and result.macd < result.signal,
            macd=result.macd,
            signal=result.signal,
            histogram=result.histogram,
        )


class BollingerBandsStrategy(Strategy):
    """Mean reversion at the bands, with a 1% tolerance on either side."""
    strategy_id = BOLLINGER_BANDS
    params: BollingerParams

    def evaluate(self, prices):
        bands = indicators.bollinger_bands(prices, self.params.period, self.params.std_dev)
        if bands is None:
            return None
        current_price = prices[-1]
        return self._signal(
            buy=current_price <= bands.lower * 1.01,
            sell=current_price >= bands.upper * 0.99,
            upper=bands.upper,
            middle=bands.middle,
            lower=bands.lower,
            current_price=current_price,
        )


class EmaCrossoverStrategy(Strategy):
    # Level based: the signal repeats for as long as one EMA stays above the other
    strategy_id = EMA_CROSSOVER
    params: EmaCrossoverParams

    def evaluate(self, prices):
        fast_ema = indicators.ema(prices, self.params.fast_period)
        slow_ema = indicators.ema(prices, self.params.slow_period)
        if fast_ema is None or slow_ema is None:
            return None
        return self._signal(
            buy=fast_ema > slow_ema,
            sell=fast_ema < slow_ema,
            fast_ema=fast_ema,
            slow_ema=slow_ema,
        )


STRATEGY_CLASSES = (
    RsiMomentumStrategy,
    MacdStrategy,
    BollingerBandsStrategy,
    EmaCrossoverStrategy,
)


def build_strategies(cfg: Config) -> List[Strategy]:
    """Instantiates every enabled strategy, in a fixed order."""
    params = cfg.strategy_params
    strategies = [cls(params[cls.strategy_id]) for cls in STRATEGY_CLASSES
                  if params[cls.strategy_id].enabled]
    logging.info(f"Enabled strategies: {[s.strategy_id for s in strategies]}")
    return strategies
