from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from signalbot.config import AppConfig
from signalbot.data.candles import Bar
from signalbot.data.exchange_client import ExchangeUnavailable, OrderRejected
from signalbot.data.market_data import AccountSnapshot
from signalbot.execution.reconciler import Reconciler
from signalbot.runtime.cycle import CycleController, CyclePhase
from signalbot.runtime.scheduler import SymbolLocks
from signalbot.storage.db import get_connection, init_db
from signalbot.storage.journal import Journal
from signalbot.storage.models import PendingOrder, PositionRecord, RiskState, TradeState
from signalbot.storage.state_store import TradeStateStore
from signalbot.strategy.signals import Signal, build_classifier

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
SYMBOL = "BTC/USDT"
PRICE = 50000.0


def _breakout_bars(count: int = 50) -> list[Bar]:
    closes = [100.0] * (count - 1) + [110.0]
    return [
        Bar(timestamp=NOW - timedelta(minutes=count - i), open=c, high=c, low=c, close=c)
        for i, c in enumerate(closes)
    ]


def _account(base_free: float = 0.0, quote_free: float = 500.0, quote_total: float = 1000.0) -> AccountSnapshot:
    return AccountSnapshot(
        symbol=SYMBOL,
        base="BTC",
        quote="USDT",
        base_free=base_free,
        base_total=base_free,
        quote_free=quote_free,
        quote_total=quote_total,
        last_price=PRICE,
    )


class _FakeClient:
    def __init__(self, *, futures: bool = False, reject_orders: bool = False):
        self.futures = futures
        self.reject_orders = reject_orders
        self.positions: list[PositionRecord] = []
        self.orders: list[PendingOrder] = []
        self.submitted: list[tuple[str, str, float, bool]] = []
        self.conditional: list[tuple[str, str, float, float]] = []

    def fetch_open_orders(self, symbol):
        return list(self.orders)

    def fetch_open_positions(self, symbols):
        return list(self.positions)

    def fetch_ticker(self, symbol):
        return {"last": PRICE}

    def submit_market_order(self, symbol, side, quantity, *, reduce_only=False):
        if self.reject_orders:
            raise OrderRejected("Account has insufficient balance")
        self.submitted.append((symbol, side, quantity, reduce_only))
        if reduce_only:
            self.positions = []
        else:
            self.positions = [
                PositionRecord(
                    symbol=symbol,
                    side="long" if side == "buy" else "short",
                    entry_price=PRICE if self.futures else None,
                    contracts=quantity,
                )
            ]
        return {"id": f"ord-{len(self.submitted)}", "status": "closed", "filled": quantity, "average": PRICE}

    def submit_conditional_order(self, symbol, kind, side, quantity, trigger_price):
        self.conditional.append((kind, side, quantity, trigger_price))
        return {"id": f"{kind}-1"}


class _FakeMarketData:
    def __init__(self, bars: list[Bar], account: AccountSnapshot, error: Exception | None = None):
        self.bars = bars
        self.account = account
        self.error = error
        self.fetches = 0

    def fetch_bars(self, symbol):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return self.bars

    def account_snapshot(self, symbol):
        return self.account


class _FixedClassifier:
    name = "fixed"

    def __init__(self, signal: Signal):
        self.signal = signal

    def classify(self, current, previous, position):
        return self.signal


class _Clock:
    def __init__(self) -> None:
        self.mono = 1000.0

    def monotonic(self) -> float:
        return self.mono


def _config(market_type: str = "spot", **risk: object) -> AppConfig:
    return AppConfig.model_validate(
        {
            "symbols": [SYMBOL],
            "exchange": {"market_type": market_type},
            "risk": {"cooldown_seconds": 15, **risk},
            "schedule": {"cycle_seconds": 60, "backoff_max_seconds": 600},
        }
    )


def _build(
    tmp_path,
    *,
    config: AppConfig | None = None,
    client: _FakeClient | None = None,
    market: _FakeMarketData | None = None,
    classifier=None,
    dry_run: bool = False,
    waiter=None,
    stop_event: threading.Event | None = None,
    clock: _Clock | None = None,
):
    config = config or _config()
    client = client or _FakeClient(futures=config.exchange.is_futures)
    market = market or _FakeMarketData(_breakout_bars(), _account())
    conn = get_connection(tmp_path / "ledger.db")
    init_db(conn)
    journal = Journal(conn)
    store = TradeStateStore(tmp_path / "state.json")
    locks = SymbolLocks()
    reconciler = Reconciler(client, config, store, journal, locks, dry_run=dry_run, clock=lambda: NOW)  # type: ignore[arg-type]
    stop = stop_event or threading.Event()
    mono = clock or _Clock()
    controller = CycleController(
        config=config,
        market_data=market,  # type: ignore[arg-type]
        client=client,  # type: ignore[arg-type]
        reconciler=reconciler,
        store=store,
        journal=journal,
        locks=locks,
        classifier=classifier or build_classifier(config.strategy, futures=config.exchange.is_futures),
        stop_event=stop,
        dry_run=dry_run,
        clock=lambda: NOW,
        waiter=waiter,
        monotonic=mono.monotonic,
    )
    return controller, client, store, journal


def test_buy_cycle_updates_risk_state_and_ledger(tmp_path) -> None:
    controller, client, store, journal = _build(tmp_path)

    result = controller.run_cycle(SYMBOL)

    assert result.status == "submitted"
    assert result.signal == Signal.BUY
    # 500 * 0.2 / 50000 caps the ATR-floored risk size of 0.2
    assert result.quantity == pytest.approx(0.002)
    assert client.submitted == [(SYMBOL, "buy", pytest.approx(0.002), False)]
    state = store.load(SYMBOL)
    assert state.risk.position_size == pytest.approx(0.002)
    assert state.risk.entry_price == PRICE
    assert state.risk.trades_today == 1
    assert state.risk.last_trade_at == NOW
    assert state.position is not None
    assert state.position.entry_price == PRICE
    assert state.last_signal == "buy"
    event = journal.recent_events(SYMBOL)[0]
    assert event.event == "order_done"
    assert event.balances_before["USDT"]["free"] == 500.0
    assert "indicators" in event.payload
    assert controller.phases[SYMBOL] == CyclePhase.IDLE


def test_cooldown_waits_for_remaining_time(tmp_path) -> None:
    waits: list[float] = []

    def _waiter(seconds: float) -> bool:
        waits.append(seconds)
        return False

    controller, _, store, _ = _build(tmp_path, waiter=_waiter)
    store.save(TradeState(symbol=SYMBOL, risk=RiskState(last_trade_at=NOW - timedelta(seconds=5))))

    controller.run_cycle(SYMBOL)

    assert waits == [pytest.approx(10.0)]


def test_shutdown_during_cooldown_aborts(tmp_path) -> None:
    controller, client, store, _ = _build(tmp_path, waiter=lambda seconds: True)
    store.save(TradeState(symbol=SYMBOL, risk=RiskState(last_trade_at=NOW - timedelta(seconds=1))))

    result = controller.run_cycle(SYMBOL)

    assert result.status == "aborted"
    assert result.reason == "shutdown"
    assert client.submitted == []


def test_cooldown_wait_does_not_hold_symbol_lock(tmp_path) -> None:
    held: list[bool] = []
    controller = None

    def _waiter(seconds: float) -> bool:
        held.append(controller.locks.get(SYMBOL).locked())
        return False

    controller, _, store, _ = _build(tmp_path, waiter=_waiter)
    store.save(TradeState(symbol=SYMBOL, risk=RiskState(last_trade_at=NOW - timedelta(seconds=5))))

    controller.run_cycle(SYMBOL)

    assert held == [False]


def test_trade_during_cooldown_skips_cycle(tmp_path) -> None:
    client = _FakeClient()
    client.positions = [PositionRecord(symbol=SYMBOL, side="long", entry_price=None, contracts=0.002)]
    market = _FakeMarketData(_breakout_bars(), _account(base_free=0.002))
    controller, _, store, _ = _build(
        tmp_path,
        client=client,
        market=market,
        waiter=lambda seconds: False,
    )
    store.save(
        TradeState(
            symbol=SYMBOL,
            risk=RiskState(
                position_size=0.002,
                entry_price=48000.0,
                last_trade_at=NOW - timedelta(seconds=5),
                trading_day=NOW.date(),
            ),
        )
    )

    result = controller.run_cycle(SYMBOL)

    # The reconciler takes profit at 50000 once the lock is held, restarting the cooldown.
    assert result.status == "skipped"
    assert result.reason == "cooldown"
    assert client.submitted == [(SYMBOL, "sell", pytest.approx(0.002), True)]
    assert market.fetches == 0
    assert store.load(SYMBOL).risk.last_trade_at == NOW


def test_rejected_order_leaves_risk_state_untouched(tmp_path) -> None:
    controller, client, store, journal = _build(tmp_path, client=_FakeClient(reject_orders=True))

    result = controller.run_cycle(SYMBOL)

    assert result.status == "failed"
    assert result.reason == "order_rejected"
    risk = store.load(SYMBOL).risk
    assert risk.position_size == 0.0
    assert risk.trades_today == 0
    assert risk.last_trade_at is None
    event = journal.recent_events(SYMBOL)[0]
    assert event.event == "order_failed"
    assert "insufficient balance" in (event.reason or "")


def test_pending_orders_block_entries(tmp_path) -> None:
    client = _FakeClient()
    client.orders = [PendingOrder(id="p1", type="limit", side="buy", price=49000.0, amount=0.001)]
    controller, _, _, journal = _build(tmp_path, client=client)

    result = controller.run_cycle(SYMBOL)

    assert result.status == "rejected"
    assert result.reason == "pending_orders"
    assert client.submitted == []
    assert journal.recent_events(SYMBOL)[0].event == "rejected"


def test_overlapping_cycle_is_skipped(tmp_path) -> None:
    entered = threading.Event()
    release = threading.Event()

    def _waiter(seconds: float) -> bool:
        entered.set()
        release.wait(5.0)
        return True

    controller, _, store, _ = _build(tmp_path, waiter=_waiter)
    store.save(TradeState(symbol=SYMBOL, risk=RiskState(last_trade_at=NOW)))
    results = []
    worker = threading.Thread(target=lambda: results.append(controller.run_cycle(SYMBOL)))
    worker.start()
    assert entered.wait(5.0)

    second = controller.run_cycle(SYMBOL)
    release.set()
    worker.join(5.0)

    assert second.status == "skipped"
    assert second.reason == "in_flight"
    assert results[0].status == "aborted"


def test_insufficient_history_skips_without_orders(tmp_path) -> None:
    market = _FakeMarketData(_breakout_bars(30), _account())
    controller, client, _, journal = _build(tmp_path, market=market)

    result = controller.run_cycle(SYMBOL)

    assert result.status == "skipped"
    assert result.reason == "insufficient_data"
    assert client.submitted == []
    assert journal.recent_events(SYMBOL) == []


def test_exchange_outage_backs_off(tmp_path) -> None:
    clock = _Clock()
    market = _FakeMarketData(_breakout_bars(), _account(), error=ExchangeUnavailable("fetch_ohlcv: timeout"))
    controller, _, _, _ = _build(tmp_path, market=market, clock=clock)

    first = controller.run_cycle(SYMBOL)
    second = controller.run_cycle(SYMBOL)

    assert first.reason == "exchange_unavailable"
    assert second.reason == "backoff"
    assert market.fetches == 1
    assert controller.backoff_remaining(SYMBOL) == pytest.approx(60.0)

    clock.mono += 61.0
    third = controller.run_cycle(SYMBOL)
    assert third.reason == "exchange_unavailable"
    assert controller.backoff_remaining(SYMBOL) == pytest.approx(120.0)


def test_stop_before_submission_aborts(tmp_path) -> None:
    stop = threading.Event()
    stop.set()
    controller, client, store, _ = _build(tmp_path, stop_event=stop)

    result = controller.run_cycle(SYMBOL)

    assert result.status == "aborted"
    assert result.phase == CyclePhase.SUBMITTING
    assert client.submitted == []
    assert store.load(SYMBOL).risk.position_size == 0.0


def test_dry_run_records_without_mutation(tmp_path) -> None:
    controller, client, store, journal = _build(tmp_path, dry_run=True)

    result = controller.run_cycle(SYMBOL)

    assert result.status == "dry_run"
    assert client.submitted == []
    assert store.load(SYMBOL).risk.trades_today == 0
    assert journal.recent_events(SYMBOL)[0].event == "dry_run"


def test_short_signal_rejected_on_spot(tmp_path) -> None:
    controller, client, _, _ = _build(tmp_path, classifier=_FixedClassifier(Signal.SHORT))
    result = controller.run_cycle(SYMBOL)
    assert result.reason == "short_on_spot"
    assert client.submitted == []


def test_daily_loss_limit_blocks_entry(tmp_path) -> None:
    controller, client, store, _ = _build(tmp_path)
    store.save(
        TradeState(
            symbol=SYMBOL,
            risk=RiskState(daily_profit_pct=-6.0, trading_day=NOW.date()),
        )
    )
    result = controller.run_cycle(SYMBOL)
    assert result.reason == "daily_loss_limit"
    assert client.submitted == []


def test_consecutive_losses_block_entry(tmp_path) -> None:
    controller, client, store, _ = _build(tmp_path)
    store.save(TradeState(symbol=SYMBOL, risk=RiskState(consecutive_losses=3, trading_day=NOW.date())))
    assert controller.run_cycle(SYMBOL).reason == "consecutive_losses"
    assert client.submitted == []


def test_technical_exit_sells_held_quantity(tmp_path) -> None:
    client = _FakeClient()
    client.positions = [PositionRecord(symbol=SYMBOL, side="long", entry_price=None, contracts=0.002)]
    market = _FakeMarketData(_breakout_bars(), _account(base_free=0.002))
    controller, _, store, _ = _build(
        tmp_path,
        client=client,
        market=market,
        classifier=_FixedClassifier(Signal.SELL),
    )
    store.save(
        TradeState(
            symbol=SYMBOL,
            risk=RiskState(
                position_size=0.002,
                entry_price=PRICE,
                last_trade_at=NOW - timedelta(minutes=5),
                trading_day=NOW.date(),
            ),
        )
    )

    result = controller.run_cycle(SYMBOL)

    assert result.status == "submitted"
    assert client.submitted == [(SYMBOL, "sell", pytest.approx(0.002), True)]
    state = store.load(SYMBOL)
    assert state.position is None
    assert state.risk.position_size == 0.0
    assert state.risk.entry_price is None


def test_futures_entry_places_protective_orders(tmp_path) -> None:
    config = _config("future")
    controller, client, store, _ = _build(
        tmp_path,
        config=config,
        classifier=_FixedClassifier(Signal.LONG),
    )

    result = controller.run_cycle(SYMBOL)

    assert result.status == "submitted"
    assert client.conditional == [
        ("stop", "sell", pytest.approx(0.002), pytest.approx(49500.0)),
        ("take_profit", "sell", pytest.approx(0.002), pytest.approx(51000.0)),
    ]
    state = store.load(SYMBOL)
    assert state.position is not None
    assert state.position.side == "long"
    assert state.risk.position_size == pytest.approx(0.002)
