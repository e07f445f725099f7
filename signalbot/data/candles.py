from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence


@dataclass(frozen=True, slots=True)
class Bar:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def bar_from_row(row: Sequence[Any]) -> Bar:
    if len(row) < 5:
        raise ValueError(f"OHLCV row has {len(row)} fields, expected at least 5")
    volume = row[5] if len(row) > 5 and row[5] is not None else 0.0
    return Bar(
        timestamp=datetime.fromtimestamp(int(row[0]) / 1000.0, tz=timezone.utc),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(volume),
    )


def bars_from_ohlcv(rows: Sequence[Sequence[Any]]) -> list[Bar]:
    by_ts: dict[datetime, Bar] = {}
    for row in rows:
        if row is None or len(row) < 5 or any(value is None for value in row[:5]):
            continue
        bar = bar_from_row(row)
        by_ts[bar.timestamp] = bar
    return [by_ts[ts] for ts in sorted(by_ts)]


def closes(bars: Sequence[Bar]) -> list[float]:
    return [bar.close for bar in bars]
