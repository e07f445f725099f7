from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone

import pytest

from signalbot.storage.db import get_connection, init_db
from signalbot.storage.journal import Journal
from signalbot.storage.models import (
    PendingOrder,
    PositionRecord,
    RiskState,
    TradeEvent,
    TradeState,
)
from signalbot.storage.state_store import TradeStateStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def test_state_store_writes_record_layout(tmp_path) -> None:
    path = tmp_path / "state" / "trade_state.json"
    store = TradeStateStore(path)
    state = TradeState(
        symbol="BTC/USDT",
        risk=RiskState(last_trade_at=NOW, position_size=0.5, entry_price=100.0, trades_today=2),
        position=PositionRecord(
            symbol="BTC/USDT",
            side="long",
            entry_price=100.0,
            contracts=0.5,
            unrealized_pnl=1.0,
            unrealized_pnl_pct=2.0,
        ),
        pending_orders=[PendingOrder(id="o-1", type="limit", side="sell", price=105.0, amount=0.5)],
        last_signal="buy",
        last_price=102.0,
        updated_at=NOW,
    )
    store.save(state)

    raw = json.loads(path.read_text(encoding="utf-8"))
    record = raw["BTC/USDT"]
    assert set(record) == {
        "time",
        "signal",
        "entry",
        "size",
        "side",
        "lastPrice",
        "pnl",
        "pnlPct",
        "pendingOrders",
        "risk",
    }
    assert record["pendingOrders"][0]["id"] == "o-1"
    assert not path.with_suffix(".json.tmp").exists()

    reloaded = TradeStateStore(path).load("BTC/USDT")
    assert reloaded.position is not None
    assert reloaded.position.unrealized_pnl_pct == 2.0
    assert reloaded.risk.last_trade_at == NOW
    assert reloaded.risk.trades_today == 2
    assert reloaded.pending_orders[0].price == 105.0


def test_state_store_keeps_other_symbols(tmp_path) -> None:
    store = TradeStateStore(tmp_path / "state.json")
    store.save(TradeState(symbol="BTC/USDT", last_signal="hold"))
    store.save(TradeState(symbol="ETH/USDT", last_signal="buy"))
    assert store.symbols() == ["BTC/USDT", "ETH/USDT"]
    assert store.load("BTC/USDT").last_signal == "hold"


def test_state_store_ignores_corrupt_file(tmp_path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = TradeStateStore(path)
    state = store.load("BTC/USDT")
    assert state.position is None
    assert state.risk.position_size == 0.0


def test_risk_state_roll_day_resets_daily_counters() -> None:
    risk = RiskState(daily_profit_pct=-3.0, trades_today=4, consecutive_losses=2, trading_day=date(2026, 3, 1))
    assert risk.roll_day(date(2026, 3, 2)) is True
    assert risk.daily_profit_pct == 0.0
    assert risk.trades_today == 0
    assert risk.consecutive_losses == 2
    assert risk.roll_day(date(2026, 3, 2)) is False


def test_risk_state_entry_and_exit_accounting() -> None:
    risk = RiskState()
    risk.record_entry(100.0, 1.0, NOW)
    risk.record_entry(110.0, 1.0, NOW)
    assert risk.position_size == pytest.approx(2.0)
    assert risk.entry_price == pytest.approx(105.0)
    assert risk.trades_today == 2

    risk.record_exit(2.0, -1.5, NOW)
    assert risk.position_size == 0.0
    assert risk.entry_price is None
    assert risk.consecutive_losses == 1
    assert risk.daily_profit_pct == pytest.approx(-1.5)

    risk.record_entry(100.0, 1.0, NOW)
    risk.record_exit(1.0, 2.0, NOW)
    assert risk.consecutive_losses == 0


def test_journal_returns_most_recent_first(tmp_path) -> None:
    conn = get_connection(tmp_path / "ledger.db")
    init_db(conn)
    journal = Journal(conn)
    for index, event in enumerate(("rejected", "order_done", "forced_exit")):
        journal.record(
            TradeEvent(
                created_at=NOW + timedelta(seconds=index),
                symbol="BTC/USDT",
                event=event,
                signal="buy",
                quantity=0.001,
                price=50000.0,
                balances_before={"USDT": {"free": 500.0}},
                payload={"index": index},
            )
        )
    journal.record(TradeEvent(created_at=NOW, symbol="ETH/USDT", event="order_done"))

    events = journal.recent_events("BTC/USDT")
    assert [item.event for item in events] == ["forced_exit", "order_done", "rejected"]
    assert events[0].payload == {"index": 2}
    assert events[-1].balances_before["USDT"]["free"] == 500.0
    assert journal.recent_events(limit=1)[0].symbol == "ETH/USDT"
    assert journal.count_events("BTC/USDT", "order_done") == 1
