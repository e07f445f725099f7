from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone

from signalbot.storage.models import TradeEvent


def _to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


class Journal:
    """Append-only trade ledger; reads come back most recent first."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def record(self, event: TradeEvent) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO trade_events (
                    created_at, symbol, event, signal, quantity, price,
                    balances_before, balances_after, reason, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _to_iso(event.created_at),
                    event.symbol,
                    event.event,
                    event.signal,
                    event.quantity,
                    event.price,
                    json.dumps(event.balances_before, default=str),
                    json.dumps(event.balances_after, default=str),
                    event.reason,
                    json.dumps(event.payload, default=str),
                ),
            )
            self.conn.commit()

    def recent_events(
        self,
        symbol: str | None = None,
        *,
        event: str | None = None,
        limit: int = 50,
    ) -> list[TradeEvent]:
        query = "SELECT * FROM trade_events"
        clauses: list[str] = []
        params: list[object] = []
        if symbol is not None:
            clauses.append("symbol = ?")
            params.append(symbol)
        if event is not None:
            clauses.append("event = ?")
            params.append(event)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            TradeEvent(
                created_at=_from_iso(row["created_at"]),
                symbol=row["symbol"],
                event=row["event"],
                signal=row["signal"],
                quantity=row["quantity"],
                price=row["price"],
                balances_before=json.loads(row["balances_before"] or "{}"),
                balances_after=json.loads(row["balances_after"] or "{}"),
                reason=row["reason"],
                payload=json.loads(row["payload"] or "{}"),
            )
            for row in rows
        ]

    def count_events(self, symbol: str, event: str) -> int:
        with self.lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS total FROM trade_events WHERE symbol = ? AND event = ?",
                (symbol, event),
            ).fetchone()
        return int(row["total"]) if row else 0
