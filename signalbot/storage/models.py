from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _opt_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(slots=True)
class RiskState:
    last_trade_at: datetime | None = None
    position_size: float = 0.0
    entry_price: float | None = None
    daily_profit_pct: float = 0.0
    trades_today: int = 0
    consecutive_losses: int = 0
    trading_day: date | None = None

    def roll_day(self, day: date) -> bool:
        if self.trading_day == day:
            return False
        self.trading_day = day
        self.daily_profit_pct = 0.0
        self.trades_today = 0
        return True

    def record_entry(self, price: float, quantity: float, at: datetime) -> None:
        if quantity <= 0:
            return
        if self.position_size > 0 and self.entry_price:
            total = self.position_size + quantity
            self.entry_price = (self.entry_price * self.position_size + price * quantity) / total
            self.position_size = total
        else:
            self.entry_price = price
            self.position_size = quantity
        self.trades_today += 1
        self.last_trade_at = at

    def record_exit(self, quantity: float, pnl_pct: float, at: datetime) -> None:
        self.position_size = max(0.0, self.position_size - max(0.0, quantity))
        if self.position_size <= 1e-12:
            self.position_size = 0.0
            self.entry_price = None
        self.daily_profit_pct += pnl_pct
        self.consecutive_losses = self.consecutive_losses + 1 if pnl_pct < 0 else 0
        self.last_trade_at = at

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastTradeAt": _to_iso(self.last_trade_at),
            "positionSize": self.position_size,
            "entryPrice": self.entry_price,
            "dailyProfitPct": self.daily_profit_pct,
            "tradesToday": self.trades_today,
            "consecutiveLosses": self.consecutive_losses,
            "tradingDay": self.trading_day.isoformat() if self.trading_day else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "RiskState":
        payload = payload or {}
        size = max(0.0, float(payload.get("positionSize") or 0.0))
        day = payload.get("tradingDay")
        return cls(
            last_trade_at=_from_iso(payload.get("lastTradeAt")),
            position_size=size,
            entry_price=_opt_float(payload.get("entryPrice")) if size > 0 else None,
            daily_profit_pct=float(payload.get("dailyProfitPct") or 0.0),
            trades_today=int(payload.get("tradesToday") or 0),
            consecutive_losses=int(payload.get("consecutiveLosses") or 0),
            trading_day=date.fromisoformat(day) if day else None,
        )


@dataclass(slots=True)
class PositionRecord:
    symbol: str
    side: str
    entry_price: float | None
    contracts: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0


@dataclass(slots=True)
class PendingOrder:
    id: str
    type: str
    side: str
    price: float | None
    amount: float
    status: str = "open"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "side": self.side,
            "price": self.price,
            "amount": self.amount,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PendingOrder":
        return cls(
            id=str(payload.get("id") or ""),
            type=str(payload.get("type") or ""),
            side=str(payload.get("side") or ""),
            price=_opt_float(payload.get("price")),
            amount=float(payload.get("amount") or 0.0),
            status=str(payload.get("status") or "open"),
        )


@dataclass(slots=True)
class TradeState:
    symbol: str
    risk: RiskState = field(default_factory=RiskState)
    position: PositionRecord | None = None
    pending_orders: list[PendingOrder] = field(default_factory=list)
    last_signal: str | None = None
    last_price: float | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        position = self.position
        return {
            "time": _to_iso(self.updated_at),
            "signal": self.last_signal,
            "entry": position.entry_price if position else None,
            "size": position.contracts if position else 0.0,
            "side": position.side if position else None,
            "lastPrice": self.last_price,
            "pnl": position.unrealized_pnl if position else 0.0,
            "pnlPct": position.unrealized_pnl_pct if position else 0.0,
            "pendingOrders": [order.to_dict() for order in self.pending_orders],
            "risk": self.risk.to_dict(),
        }

    @classmethod
    def from_dict(cls, symbol: str, payload: dict[str, Any]) -> "TradeState":
        size = float(payload.get("size") or 0.0)
        side = payload.get("side")
        position = None
        if side and size > 0:
            position = PositionRecord(
                symbol=symbol,
                side=str(side),
                entry_price=_opt_float(payload.get("entry")),
                contracts=size,
                unrealized_pnl=float(payload.get("pnl") or 0.0),
                unrealized_pnl_pct=float(payload.get("pnlPct") or 0.0),
            )
        return cls(
            symbol=symbol,
            risk=RiskState.from_dict(payload.get("risk")),
            position=position,
            pending_orders=[
                PendingOrder.from_dict(item)
                for item in payload.get("pendingOrders") or []
                if isinstance(item, dict)
            ],
            last_signal=payload.get("signal"),
            last_price=_opt_float(payload.get("lastPrice")),
            updated_at=_from_iso(payload.get("time")),
        )


@dataclass(slots=True)
class TradeEvent:
    created_at: datetime
    symbol: str
    event: str
    signal: str | None = None
    quantity: float | None = None
    price: float | None = None
    balances_before: dict[str, Any] = field(default_factory=dict)
    balances_after: dict[str, Any] = field(default_factory=dict)
    reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
