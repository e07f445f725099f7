from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def trading_day(dt: datetime, timezone_name: str = "UTC") -> date:
    return ensure_utc(dt).astimezone(_get_zone(timezone_name)).date()


def timeframe_to_seconds(timeframe: str) -> int:
    normalized = timeframe.strip()
    units = {"m": 60, "h": 3600, "d": 86400, "w": 604800}
    if len(normalized) < 2 or normalized[-1] not in units:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    try:
        count = int(normalized[:-1])
    except ValueError as exc:
        raise ValueError(f"Unsupported timeframe {timeframe}") from exc
    if count <= 0:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    return count * units[normalized[-1]]
