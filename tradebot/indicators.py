from __future__ import annotations

import math
from typing import List, Sequence

from tradebot.schemas import MACD, BollingerBands, Candle, IndicatorSnapshot, Stochastic, VolumeTrend


def _require(candles: Sequence[Candle]) -> None:
    if not candles:
        raise ValueError("candle sequence is empty")


def _closes(candles: Sequence[Candle]) -> List[float]:
    return [float(c.close) for c in candles]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def ema_series(values: Sequence[float], period: int) -> List[float]:
    """
    EMA values from index `period - 1` onwards, seeded with the SMA of the first window.
    Empty when there are fewer than `period` values.
    """
    if period <= 0 or len(values) < period:
        return []
    k = 2.0 / (period + 1)
    ema = _mean(values[:period])
    out = [ema]
    for v in values[period:]:
        ema = v * k + ema * (1 - k)
        out.append(ema)
    return out


def rsi(candles: Sequence[Candle], period: int = 14) -> float:
    """
    Simple (non-smoothed) RSI over the trailing `period` close-to-close changes.
    """
    _require(candles)
    if len(candles) < period + 1:
        return 50.0

    closes = _closes(candles)
    gains = 0.0
    losses = 0.0
    for i in range(len(closes) - period, len(closes)):
        change = closes[i] - closes[i - 1]
        if change >= 0:
            gains += change
        else:
            losses -= change

    if losses == 0:
        return 100.0

    rs = gains / losses
    return 100.0 - (100.0 / (1.0 + rs))


def sma(candles: Sequence[Candle], period: int = 20) -> float:
    _require(candles)
    closes = _closes(candles)
    if len(closes) < period:
        return closes[-1]
    return _mean(closes[-period:])


def ema(candles: Sequence[Candle], period: int = 20) -> float:
    _require(candles)
    closes = _closes(candles)
    series = ema_series(closes, period)
    if not series:
        return closes[-1]
    return series[-1]


def _signal_line(series: Sequence[float], period: int) -> float:
    smoothed = ema_series(series, period)
    if smoothed:
        return smoothed[-1]
    # Not enough MACD history yet: average what there is.
    return _mean(series)


def macd_series(closes: Sequence[float], fast: int = 12, slow: int = 26) -> List[float]:
    """
    MACD line from the first index where the slow EMA exists, carried forward incrementally.
    """
    fast_ema = ema_series(closes, fast)
    slow_ema = ema_series(closes, slow)
    if not slow_ema:
        return []
    offset = slow - fast
    return [fast_ema[i + offset] - slow_ema[i] for i in range(len(slow_ema))]


def macd(candles: Sequence[Candle], fast: int = 12, slow: int = 26, signal: int = 9) -> MACD:
    _require(candles)
    if len(candles) < slow:
        return MACD()

    series = macd_series(_closes(candles), fast, slow)
    value = series[-1]
    signal_value = _signal_line(series, signal)

    previous_histogram = 0.0
    if len(series) >= 2:
        prev = series[:-1]
        previous_histogram = prev[-1] - _signal_line(prev, signal)

    return MACD(
        value=value,
        signal=signal_value,
        histogram=value - signal_value,
        previous_histogram=previous_histogram,
    )


def bollinger(candles: Sequence[Candle], period: int = 20, multiplier: float = 2.0) -> BollingerBands:
    _require(candles)
    if len(candles) < period:
        return BollingerBands()

    window = _closes(candles)[-period:]
    middle = _mean(window)
    variance = sum((p - middle) ** 2 for p in window) / period
    width = math.sqrt(variance) * multiplier
    return BollingerBands(upper=middle + width, middle=middle, lower=middle - width)


def _raw_k(candles: Sequence[Candle], end: int, period: int) -> float:
    # %K for the window ending just before `end`; 50 where the window is short or flat.
    if end < period:
        return 50.0
    window = candles[end - period : end]
    high = max(c.high for c in window)
    low = min(c.low for c in window)
    if high == low:
        return 50.0
    k = (window[-1].close - low) / (high - low) * 100.0
    return min(100.0, max(0.0, k))


def _smoothed_k(candles: Sequence[Candle], end: int, period: int, smooth_k: int) -> float:
    return _mean([_raw_k(candles, end - i, period) for i in range(smooth_k)])


def stochastic(candles: Sequence[Candle], period: int = 14, smooth_k: int = 3, smooth_d: int = 3) -> Stochastic:
    _require(candles)
    n = len(candles)
    if n < period:
        return Stochastic()

    window = candles[-period:]
    if max(c.high for c in window) == min(c.low for c in window):
        return Stochastic()

    k_values = [_smoothed_k(candles, n - j, period, smooth_k) for j in range(smooth_d)]
    return Stochastic(k=k_values[0], d=_mean(k_values))


def volume_trend(candles: Sequence[Candle]) -> VolumeTrend:
    _require(candles)
    if len(candles) < 10:
        return VolumeTrend()

    recent = _mean([float(c.volume) for c in candles[-5:]])
    previous = _mean([float(c.volume) for c in candles[-10:-5]])
    change_pct = (recent - previous) / previous * 100.0 if previous else 0.0
    return VolumeTrend(
        trend="increasing" if recent > previous else "decreasing",
        change_pct=change_pct,
    )


def compute_snapshot(
    candles: Sequence[Candle],
    *,
    rsi_period: int = 14,
    sma_period: int = 20,
    ema_short_period: int = 9,
    ema_long_period: int = 21,
) -> IndicatorSnapshot:
    _require(candles)
    return IndicatorSnapshot(
        rsi=rsi(candles, rsi_period),
        sma=sma(candles, sma_period),
        ema_short=ema(candles, ema_short_period),
        ema_long=ema(candles, ema_long_period),
        macd=macd(candles),
        bollinger=bollinger(candles),
        stochastic=stochastic(candles),
        volume=volume_trend(candles),
    )
