from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from signalbot.clock import _get_zone, timeframe_to_seconds


class ExchangeConfig(BaseModel):
    exchange_id: str = "binance"
    market_type: str = "spot"
    sandbox: bool = True
    timeout_ms: int = 30000
    recv_window_ms: int = 60000
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0

    @model_validator(mode="after")
    def normalize(self) -> "ExchangeConfig":
        self.exchange_id = self.exchange_id.strip().lower()
        self.market_type = self.market_type.strip().lower()
        if self.market_type not in {"spot", "future"}:
            raise ValueError("exchange.market_type must be spot or future")
        if self.request_max_attempts <= 0:
            raise ValueError("exchange.request_max_attempts must be > 0")
        if self.backoff_base_seconds <= 0:
            raise ValueError("exchange.backoff_base_seconds must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("exchange.backoff_max_seconds must be >= backoff_base_seconds")
        return self

    @property
    def is_futures(self) -> bool:
        return self.market_type == "future"


class MarketDataConfig(BaseModel):
    timeframe: str = "1m"
    history_bars: int = 100
    min_bars: int = 50

    @model_validator(mode="after")
    def validate_values(self) -> "MarketDataConfig":
        timeframe_to_seconds(self.timeframe)
        if self.min_bars <= 2:
            raise ValueError("market_data.min_bars must be > 2")
        if self.history_bars < self.min_bars:
            raise ValueError("market_data.history_bars must be >= min_bars")
        return self


class IndicatorsConfig(BaseModel):
    sma_period: int = 20
    ema_fast: int = 12
    ema_slow: int = 26
    rsi_period: int = 14
    atr_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    stoch_period: int = 14
    stoch_smooth: int = 3
    envelope_bandwidth: float = 8.0
    envelope_multiplier: float = 3.0
    envelope_lookback: int = 40

    @model_validator(mode="after")
    def validate_periods(self) -> "IndicatorsConfig":
        periods = {
            "sma_period": self.sma_period,
            "ema_fast": self.ema_fast,
            "ema_slow": self.ema_slow,
            "rsi_period": self.rsi_period,
            "atr_period": self.atr_period,
            "macd_fast": self.macd_fast,
            "macd_slow": self.macd_slow,
            "macd_signal": self.macd_signal,
            "stoch_period": self.stoch_period,
            "stoch_smooth": self.stoch_smooth,
            "envelope_lookback": self.envelope_lookback,
        }
        for name, value in periods.items():
            if value <= 0:
                raise ValueError(f"indicators.{name} must be > 0")
        if self.ema_fast >= self.ema_slow:
            raise ValueError("indicators.ema_fast must be < indicators.ema_slow")
        if self.macd_fast >= self.macd_slow:
            raise ValueError("indicators.macd_fast must be < indicators.macd_slow")
        if self.envelope_bandwidth <= 0:
            raise ValueError("indicators.envelope_bandwidth must be > 0")
        if self.envelope_multiplier <= 0:
            raise ValueError("indicators.envelope_multiplier must be > 0")
        return self

    def longest_lookback(self) -> int:
        return max(
            self.sma_period,
            self.ema_slow,
            self.rsi_period + 1,
            self.atr_period + 1,
            self.macd_slow + self.macd_signal,
            self.stoch_period + self.stoch_smooth,
            self.envelope_lookback,
        )


class StrategyConfig(BaseModel):
    mode: str = "conservative"
    ema_noise_epsilon: float = 0.0005
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    take_profit_pct: float = 1.5
    stop_loss_pct: float = 1.0
    min_volatility_ratio: float = 0.0005
    long_rsi_band: tuple[float, float] = (45.0, 70.0)
    short_rsi_band: tuple[float, float] = (30.0, 55.0)

    @model_validator(mode="after")
    def validate_values(self) -> "StrategyConfig":
        self.mode = self.mode.strip().lower()
        if self.mode not in {"conservative", "aggressive", "envelope"}:
            raise ValueError("strategy.mode must be one of: conservative, aggressive, envelope")
        if self.ema_noise_epsilon < 0:
            raise ValueError("strategy.ema_noise_epsilon must be >= 0")
        if not (0 <= self.rsi_oversold < self.rsi_overbought <= 100):
            raise ValueError("strategy rsi thresholds must satisfy 0 <= oversold < overbought <= 100")
        if self.take_profit_pct <= 0 or self.stop_loss_pct <= 0:
            raise ValueError("strategy.take_profit_pct and stop_loss_pct must be > 0")
        for name, band in (("long_rsi_band", self.long_rsi_band), ("short_rsi_band", self.short_rsi_band)):
            if band[0] >= band[1]:
                raise ValueError(f"strategy.{name} lower bound must be < upper bound")
        return self


class RiskConfig(BaseModel):
    risk_percent: float = 1.0
    max_position_fraction: float = 0.2
    min_amount: float = 0.00001
    amount_step: float = 0.00001
    floor_volatility: float = 0.001
    volatility_source: str = "atr"
    volatility_window: int = 20
    cooldown_seconds: float = 15.0
    leverage: int = 5
    max_trades_per_day: int = 50
    max_consecutive_losses: int = 3
    daily_loss_limit_pct: float = 5.0

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskConfig":
        if not (0 < self.risk_percent <= 100):
            raise ValueError("risk.risk_percent must be in (0,100]")
        if not (0 < self.max_position_fraction <= 1.0):
            raise ValueError("risk.max_position_fraction must be in (0,1]")
        if self.min_amount < 0:
            raise ValueError("risk.min_amount must be >= 0")
        if self.amount_step <= 0:
            raise ValueError("risk.amount_step must be > 0")
        if self.floor_volatility <= 0:
            raise ValueError("risk.floor_volatility must be > 0")
        self.volatility_source = self.volatility_source.strip().lower()
        if self.volatility_source not in {"atr", "range"}:
            raise ValueError("risk.volatility_source must be atr or range")
        if self.volatility_window <= 0:
            raise ValueError("risk.volatility_window must be > 0")
        if self.cooldown_seconds < 0:
            raise ValueError("risk.cooldown_seconds must be >= 0")
        if self.leverage <= 0:
            raise ValueError("risk.leverage must be > 0")
        if self.max_trades_per_day <= 0:
            raise ValueError("risk.max_trades_per_day must be > 0")
        if self.max_consecutive_losses <= 0:
            raise ValueError("risk.max_consecutive_losses must be > 0")
        if self.daily_loss_limit_pct <= 0:
            raise ValueError("risk.daily_loss_limit_pct must be > 0")
        return self


class ExitConfig(BaseModel):
    take_profit_pct: float = 2.0
    stop_loss_pct: float = 5.0
    protective_orders_enabled: bool = True
    protective_stop_pct: float = 1.0
    protective_take_profit_pct: float = 2.0

    @model_validator(mode="after")
    def validate_values(self) -> "ExitConfig":
        if self.take_profit_pct <= 0:
            raise ValueError("exits.take_profit_pct must be > 0")
        if self.stop_loss_pct <= 0:
            raise ValueError("exits.stop_loss_pct must be > 0")
        if not (0 < self.protective_stop_pct < 100):
            raise ValueError("exits.protective_stop_pct must be in (0,100)")
        if self.protective_take_profit_pct <= 0:
            raise ValueError("exits.protective_take_profit_pct must be > 0")
        return self


class ScheduleConfig(BaseModel):
    cycle_seconds: float = 60.0
    sync_seconds: float = 300.0
    backoff_max_seconds: float = 600.0
    max_workers: int = 4

    @model_validator(mode="after")
    def validate_values(self) -> "ScheduleConfig":
        if self.cycle_seconds <= 0:
            raise ValueError("schedule.cycle_seconds must be > 0")
        if self.sync_seconds <= 0:
            raise ValueError("schedule.sync_seconds must be > 0")
        if self.backoff_max_seconds < self.cycle_seconds:
            raise ValueError("schedule.backoff_max_seconds must be >= cycle_seconds")
        if self.max_workers <= 0:
            raise ValueError("schedule.max_workers must be > 0")
        return self


class StorageConfig(BaseModel):
    state_path: str = "state/trade_state.json"
    journal_path: str = "state/ledger.db"


class AlertsConfig(BaseModel):
    enabled: bool = True
    min_level: str = "warning"
    cooldown_seconds: int = 30

    @model_validator(mode="after")
    def validate_level(self) -> "AlertsConfig":
        self.min_level = self.min_level.strip().lower()
        if self.min_level not in {"info", "warning", "error", "critical"}:
            raise ValueError("alerts.min_level must be one of: info, warning, error, critical")
        if self.cooldown_seconds < 0:
            raise ValueError("alerts.cooldown_seconds must be >= 0")
        return self


class AppConfig(BaseModel):
    timezone: str = "UTC"
    symbols: list[str] = Field(default_factory=lambda: ["BTC/USDT"])
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    indicators: IndicatorsConfig = Field(default_factory=IndicatorsConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    exits: ExitConfig = Field(default_factory=ExitConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)

    @model_validator(mode="after")
    def validate_timezone(self) -> "AppConfig":
        try:
            _get_zone(self.timezone)
        except (RuntimeError, ValueError) as exc:
            raise ValueError(f"timezone '{self.timezone}' is not a known IANA zone") from exc
        return self

    @model_validator(mode="after")
    def normalize_symbols(self) -> "AppConfig":
        normalized: list[str] = []
        seen: set[str] = set()
        for symbol in self.symbols:
            item = str(symbol).strip().upper()
            if not item or item in seen:
                continue
            if "/" not in item:
                raise ValueError(f"symbol '{item}' must look like BASE/QUOTE")
            seen.add(item)
            normalized.append(item)
        if not normalized:
            raise ValueError("at least one trading symbol is required")
        self.symbols = normalized
        return self

    def required_bars(self) -> int:
        return max(self.market_data.min_bars, self.indicators.longest_lookback() + 2)


def split_symbol(symbol: str) -> tuple[str, str]:
    """BTC/USDT -> (BTC, USDT); BTC/USDT:USDT -> (BTC, USDT)."""
    pair = symbol.split(":", 1)[0]
    base, quote = pair.split("/", 1)
    return base.strip().upper(), quote.strip().upper()


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
