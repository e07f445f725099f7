from __future__ import annotations

import main


def _clear_env(monkeypatch) -> None:
    monkeypatch.setattr(main, "load_dotenv", lambda *args, **kwargs: False)
    for name in (
        "EXCHANGE_API_KEY",
        "EXCHANGE_API_SECRET",
        "CREDENTIALS_URL",
        "CREDENTIALS_TOKEN",
        "TRADE_SYMBOLS",
        "EXCHANGE_ID",
        "EXCHANGE_SANDBOX",
        "STATE_PATH",
        "JOURNAL_PATH",
        "ALERT_WEBHOOK_URL",
        "ALERT_TELEGRAM_BOT_TOKEN",
        "ALERT_TELEGRAM_CHAT_ID",
    ):
        monkeypatch.delenv(name, raising=False)


def test_parse_symbols_csv() -> None:
    assert main.parse_symbols_csv(None) == []
    assert main.parse_symbols_csv(" btc/usdt,, eth/usdt ,BTC/USDT") == ["BTC/USDT", "ETH/USDT"]


def test_env_flag() -> None:
    assert main.env_flag(None, True) is True
    assert main.env_flag("  ", False) is False
    assert main.env_flag("Yes", False) is True
    assert main.env_flag("0", True) is False


def test_parse_args_flags() -> None:
    args = main.parse_args(["--config", "other.yaml", "--dry-run", "--once"])
    assert args.config == "other.yaml"
    assert args.dry_run is True
    assert args.once is True


def test_run_exits_with_code_1_without_credentials(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text("symbols: [BTC/USDT]\n", encoding="utf-8")
    assert main.run(["--config", str(config_path), "--once"]) == 1


def test_run_exits_with_code_2_on_invalid_config(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text("strategy:\n  mode: martingale\n", encoding="utf-8")
    assert main.run(["--config", str(config_path)]) == 2


def test_run_exits_with_code_2_on_unknown_timezone(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text("timezone: Mars/Olympus\n", encoding="utf-8")
    assert main.run(["--config", str(config_path), "--once"]) == 2


def test_run_exits_with_code_2_on_missing_config(monkeypatch, tmp_path) -> None:
    _clear_env(monkeypatch)
    assert main.run(["--config", str(tmp_path / "nope.yaml")]) == 2


def test_alert_dispatcher_reads_channels_from_env() -> None:
    dispatcher = main.build_alert_dispatcher(
        main.AppConfig(),
        {"ALERT_TELEGRAM_BOT_TOKEN": "123:abc", "ALERT_TELEGRAM_CHAT_ID": "42"},
    )
    assert dispatcher.has_channels is True
    assert dispatcher.config.min_level == "warning"
