from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from signalbot.config import StrategyConfig
from signalbot.strategy.indicators import IndicatorSnapshot


class Signal(str, Enum):
    HOLD = "hold"
    BUY = "buy"
    SELL = "sell"
    LONG = "long"
    SHORT = "short"


@dataclass(frozen=True, slots=True)
class PositionContext:
    side: str | None = None
    entry_price: float | None = None
    quantity: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.side in {"long", "short"} and self.quantity > 0

    def pnl_pct(self, price: float) -> float | None:
        if not self.is_open or not self.entry_price or self.entry_price <= 0:
            return None
        if self.side == "short":
            return (self.entry_price - price) / self.entry_price * 100
        return (price - self.entry_price) / self.entry_price * 100

    def closing_signal(self) -> Signal:
        return Signal.BUY if self.side == "short" else Signal.SELL


FLAT = PositionContext()


class SignalClassifier(Protocol):
    name: str

    def classify(
        self,
        current: IndicatorSnapshot,
        previous: IndicatorSnapshot,
        position: PositionContext,
    ) -> Signal:
        ...


def crossed_above(previous: IndicatorSnapshot, current: IndicatorSnapshot) -> bool:
    return previous.ema_fast <= previous.ema_slow and current.ema_fast > current.ema_slow


def crossed_below(previous: IndicatorSnapshot, current: IndicatorSnapshot) -> bool:
    return previous.ema_fast >= previous.ema_slow and current.ema_fast < current.ema_slow


def in_noise_band(current: IndicatorSnapshot, epsilon: float) -> bool:
    return abs(current.ema_fast - current.ema_slow) < epsilon


def profit_or_loss_exit(
    position: PositionContext,
    price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
) -> Signal | None:
    pct = position.pnl_pct(price)
    if pct is None:
        return None
    if pct >= take_profit_pct or pct <= -stop_loss_pct:
        return position.closing_signal()
    return None


class TrendRsiClassifier:
    """
    Trend-following entries filtered by RSI, exits on trend loss or overbought.

    Price-based take profit / stop loss is left to the reconciler.
    """

    name = "conservative"

    def __init__(self, config: StrategyConfig):
        self.config = config

    def classify(
        self,
        current: IndicatorSnapshot,
        previous: IndicatorSnapshot,
        position: PositionContext,
    ) -> Signal:
        cfg = self.config
        if in_noise_band(current, cfg.ema_noise_epsilon):
            return Signal.HOLD

        if not position.is_open:
            if (
                current.ema_fast > current.ema_slow
                and current.price > current.sma20
                and current.rsi <= cfg.rsi_overbought
            ):
                return Signal.BUY
            if (
                current.rsi < cfg.rsi_oversold
                and current.rsi > previous.rsi
                and not crossed_below(previous, current)
            ):
                return Signal.BUY
            return Signal.HOLD

        if position.side == "long" and (
            current.ema_fast < current.ema_slow or current.rsi > cfg.rsi_overbought
        ):
            return Signal.SELL
        return Signal.HOLD


class MomentumCrossClassifier:
    """EMA crossover entries confirmed by MACD, stochastic, volatility and an RSI band."""

    name = "aggressive"

    def __init__(self, config: StrategyConfig):
        self.config = config

    def classify(
        self,
        current: IndicatorSnapshot,
        previous: IndicatorSnapshot,
        position: PositionContext,
    ) -> Signal:
        cfg = self.config
        if position.is_open:
            exit_signal = profit_or_loss_exit(
                position, current.price, cfg.take_profit_pct, cfg.stop_loss_pct
            )
            if exit_signal is not None:
                return exit_signal
            if in_noise_band(current, cfg.ema_noise_epsilon):
                return Signal.HOLD
            if position.side == "long" and (
                crossed_below(previous, current) or current.rsi > cfg.rsi_overbought
            ):
                return Signal.SELL
            if position.side == "short" and (
                crossed_above(previous, current) or current.rsi < cfg.rsi_oversold
            ):
                return Signal.BUY
            return Signal.HOLD

        if in_noise_band(current, cfg.ema_noise_epsilon):
            return Signal.HOLD
        if current.volatility_ratio < cfg.min_volatility_ratio:
            return Signal.HOLD

        long_low, long_high = cfg.long_rsi_band
        if (
            crossed_above(previous, current)
            and current.macd.histogram > 0
            and current.stoch.k > current.stoch.d
            and long_low < current.rsi < long_high
        ):
            return Signal.LONG

        short_low, short_high = cfg.short_rsi_band
        if (
            crossed_below(previous, current)
            and current.macd.histogram < 0
            and current.stoch.k < current.stoch.d
            and short_low < current.rsi < short_high
        ):
            return Signal.SHORT
        return Signal.HOLD


class EnvelopeClassifier:
    """Mean reversion on the Nadaraya-Watson envelope."""

    name = "envelope"

    def __init__(self, config: StrategyConfig, *, entry_signal: Signal = Signal.BUY):
        self.config = config
        self.entry_signal = entry_signal

    def classify(
        self,
        current: IndicatorSnapshot,
        previous: IndicatorSnapshot,
        position: PositionContext,
    ) -> Signal:
        cfg = self.config
        exit_signal = profit_or_loss_exit(
            position, current.price, cfg.take_profit_pct, cfg.stop_loss_pct
        )
        if exit_signal is not None:
            return exit_signal

        if position.is_open:
            if (
                position.side == "long"
                and previous.price <= previous.envelope.upper
                and current.price > current.envelope.upper
            ):
                return Signal.SELL
            return Signal.HOLD

        if (
            previous.price >= previous.envelope.lower
            and current.price < current.envelope.lower
        ):
            return self.entry_signal
        return Signal.HOLD


def build_classifier(config: StrategyConfig, *, futures: bool = False) -> SignalClassifier:
    if config.mode == "aggressive":
        return MomentumCrossClassifier(config)
    if config.mode == "envelope":
        return EnvelopeClassifier(config, entry_signal=Signal.LONG if futures else Signal.BUY)
    return TrendRsiClassifier(config)
