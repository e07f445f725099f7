from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Sequence

from signalbot.config import IndicatorsConfig
from signalbot.data.candles import Bar, closes


class InsufficientData(ValueError):
    """Raised when a bar window is too short for the configured lookbacks."""

    def __init__(self, available: int, required: int):
        super().__init__(f"need at least {required} bars, got {available}")
        self.available = available
        self.required = required


@dataclass(frozen=True, slots=True)
class MacdValue:
    macd: float
    signal: float
    histogram: float


@dataclass(frozen=True, slots=True)
class StochValue:
    k: float
    d: float


@dataclass(frozen=True, slots=True)
class Envelope:
    mid: float
    upper: float
    lower: float


@dataclass(frozen=True, slots=True)
class IndicatorSnapshot:
    price: float
    sma20: float
    ema_fast: float
    ema_slow: float
    rsi: float
    atr: float
    macd: MacdValue
    stoch: StochValue
    volatility_ratio: float
    envelope: Envelope

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _require(values: Sequence[Any], count: int, name: str) -> None:
    if count <= 0:
        raise ValueError(f"{name} period must be > 0")
    if len(values) < count:
        raise InsufficientData(len(values), count)


def sma(values: Sequence[float], period: int) -> float:
    _require(values, period, "sma")
    window = values[-period:]
    return sum(window) / period


def ema_series(values: Sequence[float], period: int) -> list[float]:
    # Seeded with the first value of the window, not with an SMA.
    if period <= 0:
        raise ValueError("ema period must be > 0")
    if not values:
        return []
    k = 2 / (period + 1)
    prev = values[0]
    output: list[float] = []
    for value in values:
        prev = value * k + prev * (1 - k)
        output.append(prev)
    return output


def ema(values: Sequence[float], period: int) -> float:
    _require(values, 1, "ema")
    return ema_series(values, period)[-1]


def rsi(values: Sequence[float], period: int = 14) -> float:
    # Averages only the first `period` changes of the window (no Wilder smoothing).
    _require(values, period + 1, "rsi")
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = values[i] - values[i - 1]
        if diff > 0:
            gains += diff
        else:
            losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def true_range(bar: Bar, prev_close: float) -> float:
    return max(
        bar.high - bar.low,
        abs(bar.high - prev_close),
        abs(bar.low - prev_close),
    )


def atr(bars: Sequence[Bar], period: int = 14) -> float:
    # Simple mean of the first `period` true ranges of the window.
    _require(bars, period + 1, "atr")
    ranges = [true_range(bars[i], bars[i - 1].close) for i in range(1, period + 1)]
    return sum(ranges) / period


def range_volatility(bars: Sequence[Bar], window: int = 20) -> float:
    if len(bars) < 2:
        return 0.0
    recent = bars[-window:]
    return sum(bar.high - bar.low for bar in recent) / len(recent)


def macd_series(
    values: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> list[MacdValue]:
    fast_series = ema_series(values, fast)
    slow_series = ema_series(values, slow)
    lines = [f - s for f, s in zip(fast_series, slow_series)]
    signals = ema_series(lines, signal)
    return [MacdValue(macd=m, signal=s, histogram=m - s) for m, s in zip(lines, signals)]


def macd(
    values: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> MacdValue:
    _require(values, 1, "macd")
    return macd_series(values, fast, slow, signal)[-1]


def _stoch_k(bars: Sequence[Bar]) -> float:
    highest = max(bar.high for bar in bars)
    lowest = min(bar.low for bar in bars)
    if highest == lowest:
        return 50.0
    return 100 * (bars[-1].close - lowest) / (highest - lowest)


def stochastic(bars: Sequence[Bar], period: int = 14, smooth: int = 3) -> StochValue:
    _require(bars, period + smooth - 1, "stochastic")
    k_values = [
        _stoch_k(bars[end - period:end])
        for end in range(len(bars) - smooth + 1, len(bars) + 1)
    ]
    return StochValue(k=k_values[-1], d=sum(k_values) / len(k_values))


def _kernel_estimate(values: Sequence[float], bandwidth: float) -> float:
    last = len(values) - 1
    weighted = 0.0
    total = 0.0
    for i, value in enumerate(values):
        distance = last - i
        weight = math.exp(-(distance * distance) / (2 * bandwidth * bandwidth))
        weighted += weight * value
        total += weight
    return weighted / total


def nadaraya_watson_envelope(
    values: Sequence[float],
    bandwidth: float = 8.0,
    multiplier: float = 3.0,
    lookback: int = 40,
) -> Envelope:
    _require(values, lookback, "envelope")
    window = list(values[-lookback:])
    estimates = [_kernel_estimate(window[: i + 1], bandwidth) for i in range(len(window))]
    mae = sum(abs(v - e) for v, e in zip(window, estimates)) / len(window)
    mid = estimates[-1]
    band = mae * multiplier
    return Envelope(mid=mid, upper=mid + band, lower=mid - band)


def _window_snapshot(
    bars: Sequence[Bar],
    config: IndicatorsConfig,
    *,
    ema_fast: float,
    ema_slow: float,
    macd_value: MacdValue,
) -> IndicatorSnapshot:
    prices = closes(bars)
    price = prices[-1]
    atr_value = atr(bars, config.atr_period)
    return IndicatorSnapshot(
        price=price,
        sma20=sma(prices, config.sma_period),
        ema_fast=ema_fast,
        ema_slow=ema_slow,
        rsi=rsi(prices, config.rsi_period),
        atr=atr_value,
        macd=macd_value,
        stoch=stochastic(bars, config.stoch_period, config.stoch_smooth),
        volatility_ratio=atr_value / price if price else 0.0,
        envelope=nadaraya_watson_envelope(
            prices,
            config.envelope_bandwidth,
            config.envelope_multiplier,
            config.envelope_lookback,
        ),
    )


def compute_snapshot(bars: Sequence[Bar], config: IndicatorsConfig) -> IndicatorSnapshot:
    prices = closes(bars)
    return _window_snapshot(
        bars,
        config,
        ema_fast=ema(prices, config.ema_fast),
        ema_slow=ema(prices, config.ema_slow),
        macd_value=macd(prices, config.macd_fast, config.macd_slow, config.macd_signal),
    )


def compute_snapshots(
    bars: Sequence[Bar],
    config: IndicatorsConfig,
    *,
    min_bars: int = 50,
) -> tuple[IndicatorSnapshot, IndicatorSnapshot]:
    """
    Return (current, previous) snapshots one bar apart.

    EMA and MACD values are the last two points of one series over the whole
    window, so both snapshots share the same seed. Window statistics (SMA,
    RSI, ATR, stochastic, envelope) use two equal windows, bars[1:] and bars[:-1].
    """
    required = max(min_bars, config.longest_lookback() + 2)
    if len(bars) < required:
        raise InsufficientData(len(bars), required)
    prices = closes(bars)
    fast = ema_series(prices, config.ema_fast)
    slow = ema_series(prices, config.ema_slow)
    macd_values = macd_series(prices, config.macd_fast, config.macd_slow, config.macd_signal)
    current = _window_snapshot(
        bars[1:],
        config,
        ema_fast=fast[-1],
        ema_slow=slow[-1],
        macd_value=macd_values[-1],
    )
    previous = _window_snapshot(
        bars[:-1],
        config,
        ema_fast=fast[-2],
        ema_slow=slow[-2],
        macd_value=macd_values[-2],
    )
    return current, previous
