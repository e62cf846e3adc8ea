# spotbot/indicators.py
"""
Technical indicators over an ordered price sequence.

Every function is pure: the input is never mutated, and a sequence shorter
than the indicator's lookback yields None rather than a value computed from
partial data.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd


@dataclass(frozen=True)
class MacdResult:
    macd: float
    signal: Optional[float]
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


def ema_series(prices: Sequence[float], period: int) -> Optional[pd.Series]:
    """
    EMA value at every index from `period - 1` onward, indexed by position.

    The first value is the simple average of the first `period` prices; each
    later value follows `ema = (price - ema) * 2 / (period + 1) + ema`. Because
    the recurrence only looks backwards, the value at index i equals the EMA of
    the prefix `prices[:i + 1]`.
    """
    if period <= 0 or len(prices) < period:
        return None
    series = pd.Series(prices, dtype="float64")
    seeded = series.iloc[period - 1:].copy()
    seeded.iloc[0] = series.iloc[:period].mean()
    return seeded.ewm(span=period, adjust=False).mean()


def ema(prices: Sequence[float], period: int) -> Optional[float]:
    values = ema_series(prices, period)
    if values is None:
        return None
    return float(values.iloc[-1])


def rsi(prices: Sequence[float], period: int = 14) -> Optional[float]:
    """Wilder's RSI. Returns 100 when the smoothed average loss is zero."""
    if period <= 0 or len(prices) < period + 1:
        return None
    deltas = np.diff(np.asarray(prices, dtype=float))
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 100.0
    return float(100 - 100 / (1 + avg_gain / avg_loss))


def momentum(prices: Sequence[float], period: int = 10) -> Optional[float]:
    """Percent change between the last price and the price `period` steps earlier."""
    if period <= 0 or len(prices) < period + 1:
        return None
    past = prices[-period - 1]
    return (prices[-1] - past) / past * 100


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26,
         signal: int = 9) -> Optional[MacdResult]:
    """
    MACD line, signal line and histogram.

    The signal line is the EMA of the MACD-line history taken at every index
    from `slow` onward, each entry being EMA(fast) - EMA(slow) of the prefix
    ending there. The histogram treats an undefined signal line as 0.
    """
    if len(prices) < slow + signal:
        return None
    fast_values = ema_series(prices, fast)
    slow_values = ema_series(prices, slow)
    if fast_values is None or slow_values is None:
        return None

    macd_line = float(fast_values.iloc[-1] - slow_values.iloc[-1])
    history = (fast_values - slow_values).loc[slow:]
    signal_line = ema(history.tolist(), signal)
    return MacdResult(
        macd=macd_line,
        signal=signal_line,
        histogram=macd_line - (signal_line or 0.0),
    )


def bollinger_bands(prices: Sequence[float], period: int = 20,
                    std_dev: float = 2.0) -> Optional[BollingerBands]:
    """SMA envelope at +/- `std_dev` population standard deviations."""
    if period <= 0 or len(prices) < period:
        return None
    recent = pd.Series(prices[-period:], dtype="float64")
    middle = float(recent.mean())
    sigma = float(recent.std(ddof=0))
    return BollingerBands(
        upper=middle + std_dev * sigma,
        middle=middle,
        lower=middle - std_dev * sigma,
    )
