from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from main import apply_env_overrides
from signalbot.config import AppConfig, load_config, split_symbol

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_defaults_need_fifty_bars() -> None:
    config = AppConfig()
    assert config.symbols == ["BTC/USDT"]
    assert config.required_bars() == 50
    assert config.exchange.is_futures is False


def test_symbols_are_normalized_and_deduplicated() -> None:
    config = AppConfig.model_validate({"symbols": [" btc/usdt ", "BTC/USDT", "eth/usdt"]})
    assert config.symbols == ["BTC/USDT", "ETH/USDT"]


def test_symbol_without_quote_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"symbols": ["BTCUSDT"]})


def test_unknown_strategy_mode_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"strategy": {"mode": "yolo"}})


def test_fast_ema_must_be_shorter_than_slow() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"indicators": {"ema_fast": 30, "ema_slow": 26}})


def test_load_config_from_yaml(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "symbols: [eth/usdt]\n"
        "exchange:\n  market_type: FUTURE\n"
        "strategy:\n  mode: aggressive\n",
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.symbols == ["ETH/USDT"]
    assert config.exchange.is_futures is True
    assert config.strategy.mode == "aggressive"


def test_repository_config_loads() -> None:
    config = load_config(REPO_ROOT / "config.yaml")
    assert config.strategy.long_rsi_band == (45.0, 70.0)
    assert config.exits.take_profit_pct == 2.0
    assert config.exits.stop_loss_pct == 5.0


def test_split_symbol_handles_settlement_suffix() -> None:
    assert split_symbol("BTC/USDT") == ("BTC", "USDT")
    assert split_symbol("btc/usdt:usdt") == ("BTC", "USDT")


def test_env_overrides_replace_symbols_and_paths() -> None:
    config = apply_env_overrides(
        AppConfig(),
        {
            "TRADE_SYMBOLS": "eth/usdt, sol/usdt,ETH/USDT",
            "EXCHANGE_ID": "Bybit",
            "EXCHANGE_SANDBOX": "false",
            "STATE_PATH": "/tmp/state.json",
        },
    )
    assert config.symbols == ["ETH/USDT", "SOL/USDT"]
    assert config.exchange.exchange_id == "bybit"
    assert config.exchange.sandbox is False
    assert config.storage.state_path == "/tmp/state.json"
    assert config.storage.journal_path == "state/ledger.db"


def test_timeframe_must_be_supported() -> None:
    with pytest.raises(ValidationError):
        AppConfig.model_validate({"market_data": {"timeframe": "5x"}})


def test_unknown_timezone_is_rejected_at_load() -> None:
    with pytest.raises(ValidationError, match="Mars/Olympus"):
        AppConfig.model_validate({"timezone": "Mars/Olympus"})
    assert AppConfig.model_validate({"timezone": "Europe/Warsaw"}).timezone == "Europe/Warsaw"
