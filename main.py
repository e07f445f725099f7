from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from signalbot.config import AppConfig, load_config
from signalbot.data.credentials import CredentialMissing, ExchangeCredentials, load_credentials
from signalbot.data.exchange_client import ExchangeAPIError, ExchangeClient
from signalbot.data.market_data import MarketDataService
from signalbot.execution.reconciler import Reconciler
from signalbot.monitoring.alerts import AlertConfig, AlertDispatcher
from signalbot.runtime.cycle import CycleController
from signalbot.runtime.scheduler import Scheduler, SymbolLocks
from signalbot.storage.db import get_connection, init_db
from signalbot.storage.journal import Journal
from signalbot.storage.state_store import TradeStateStore
from signalbot.strategy.signals import build_classifier

LOGGER = logging.getLogger("signalbot")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Periodic signal-and-risk crypto trading agent")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--dry-run", action="store_true", help="Run the full pipeline but never send orders")
    parser.add_argument("--once", action="store_true", help="Run one reconcile and decision pass per symbol, then exit")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def parse_symbols_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    out: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        symbol = part.strip().upper()
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)
        out.append(symbol)
    return out


def env_flag(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def apply_env_overrides(config: AppConfig, env: Mapping[str, str] | None = None) -> AppConfig:
    environ = os.environ if env is None else env
    raw = config.model_dump()
    symbols = parse_symbols_csv(environ.get("TRADE_SYMBOLS"))
    if symbols:
        raw["symbols"] = symbols
    if environ.get("EXCHANGE_ID"):
        raw["exchange"]["exchange_id"] = environ["EXCHANGE_ID"]
    raw["exchange"]["sandbox"] = env_flag(environ.get("EXCHANGE_SANDBOX"), raw["exchange"]["sandbox"])
    if environ.get("STATE_PATH"):
        raw["storage"]["state_path"] = environ["STATE_PATH"]
    if environ.get("JOURNAL_PATH"):
        raw["storage"]["journal_path"] = environ["JOURNAL_PATH"]
    return AppConfig.model_validate(raw)


def build_alert_dispatcher(config: AppConfig, env: Mapping[str, str] | None = None) -> AlertDispatcher:
    environ = os.environ if env is None else env
    return AlertDispatcher(
        AlertConfig(
            enabled=config.alerts.enabled,
            webhook_url=environ.get("ALERT_WEBHOOK_URL"),
            telegram_bot_token=environ.get("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=environ.get("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=config.alerts.cooldown_seconds,
            min_level=config.alerts.min_level,
        )
    )


def resolve_path(root: Path, raw: str) -> Path:
    path = Path(raw)
    return path if path.is_absolute() else root / path


@dataclass(slots=True)
class Runtime:
    client: ExchangeClient
    journal: Journal
    reconciler: Reconciler
    controller: CycleController
    scheduler: Scheduler


def build_runtime(
    config: AppConfig,
    credentials: ExchangeCredentials,
    *,
    root: Path,
    dry_run: bool,
    stop_event: threading.Event,
    alerts: AlertDispatcher,
) -> Runtime:
    client = ExchangeClient.from_config(
        config.exchange,
        credentials.api_key,
        credentials.api_secret,
        dust_amount=config.risk.min_amount,
    )
    conn = get_connection(resolve_path(root, config.storage.journal_path))
    init_db(conn)
    journal = Journal(conn)
    store = TradeStateStore(resolve_path(root, config.storage.state_path))
    locks = SymbolLocks()
    reconciler = Reconciler(client, config, store, journal, locks, alerts, dry_run=dry_run)
    controller = CycleController(
        config=config,
        market_data=MarketDataService(client, config),
        client=client,
        reconciler=reconciler,
        store=store,
        journal=journal,
        locks=locks,
        classifier=build_classifier(config.strategy, futures=config.exchange.is_futures),
        stop_event=stop_event,
        alerts=alerts,
        dry_run=dry_run,
    )
    scheduler = Scheduler(
        config.symbols,
        decide=controller.run_cycle,
        reconcile=reconciler.run,
        config=config.schedule,
        stop_event=stop_event,
    )
    return Runtime(
        client=client,
        journal=journal,
        reconciler=reconciler,
        controller=controller,
        scheduler=scheduler,
    )


def configure_leverage(client: ExchangeClient, config: AppConfig, *, dry_run: bool) -> None:
    if not config.exchange.is_futures or dry_run:
        return
    for symbol in config.symbols:
        try:
            client.set_leverage(symbol, config.risk.leverage)
        except ExchangeAPIError as exc:
            LOGGER.warning("Could not set leverage for %s: %s", symbol, exc)


def run(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    try:
        config = apply_env_overrides(load_config(resolve_path(root, args.config)))
    except (OSError, ValidationError, yaml.YAMLError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    alerts = build_alert_dispatcher(config)
    try:
        credentials = load_credentials()
    except CredentialMissing as exc:
        LOGGER.error("Exchange credentials unavailable: %s", exc)
        alerts.send(event="startup_failed", message=str(exc), level="critical")
        return 1

    stop_event = threading.Event()
    runtime = build_runtime(
        config,
        credentials,
        root=root,
        dry_run=args.dry_run,
        stop_event=stop_event,
        alerts=alerts,
    )
    LOGGER.info(
        "Starting agent | exchange=%s | market=%s | sandbox=%s | mode=%s | strategy=%s | symbols=%s",
        config.exchange.exchange_id,
        config.exchange.market_type,
        config.exchange.sandbox,
        "dry-run" if args.dry_run else "live",
        config.strategy.mode,
        ",".join(config.symbols),
    )
    configure_leverage(runtime.client, config, dry_run=args.dry_run)

    if args.once:
        runtime.scheduler.run_once()
        runtime.scheduler.shutdown()
        LOGGER.info("Exchange metrics: %s", runtime.client.metrics_snapshot())
        return 0

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    runtime.scheduler.run_forever()
    LOGGER.info("Exchange metrics: %s", runtime.client.metrics_snapshot())
    LOGGER.info("Agent stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
