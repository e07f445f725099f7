from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from signalbot.clock import trading_day, utc_now
from signalbot.config import AppConfig
from signalbot.data.exchange_client import ExchangeAPIError, ExchangeClient
from signalbot.execution.sizing import exit_quantity
from signalbot.monitoring.alerts import AlertDispatcher
from signalbot.runtime.scheduler import SymbolLocks
from signalbot.storage.journal import Journal
from signalbot.storage.models import TradeEvent, TradeState
from signalbot.storage.state_store import TradeStateStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    ok: bool
    position_open: bool = False
    pending_orders: int = 0
    error: str | None = None


@dataclass(slots=True)
class ExitResult:
    closed: bool
    reason: str
    side: str
    quantity: float
    pnl_pct: float
    order_id: str | None = None
    error: str | None = None


def calculate_pnl(side: str, entry: float, contracts: float, last: float) -> tuple[float, float]:
    if entry <= 0 or contracts <= 0:
        return 0.0, 0.0
    if side == "short":
        diff = entry - last
    else:
        diff = last - entry
    pnl = diff * contracts
    pct = diff / entry * 100
    return round(pnl, 2), round(pct, 2)


class Reconciler:
    def __init__(
        self,
        client: ExchangeClient,
        config: AppConfig,
        store: TradeStateStore,
        journal: Journal,
        locks: SymbolLocks,
        alerts: AlertDispatcher | None = None,
        *,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.config = config
        self.store = store
        self.journal = journal
        self.locks = locks
        self.alerts = alerts
        self.dry_run = dry_run
        self.clock = clock

    def sync(self, state: TradeState) -> SyncResult:
        symbol = state.symbol
        try:
            orders = self.client.fetch_open_orders(symbol)
            positions = self.client.fetch_open_positions([symbol])
            last_price = self.client.fetch_ticker(symbol)["last"]
        except ExchangeAPIError as exc:
            LOGGER.warning("Sync failed symbol=%s: %s", symbol, exc)
            return SyncResult(ok=False, error=str(exc))

        now = self.clock()
        state.pending_orders = orders
        state.last_price = last_price
        previous = state.position
        position = next((item for item in positions if item.symbol == symbol), None)

        if position is None:
            if previous is not None or state.risk.position_size > 0:
                pct = previous.unrealized_pnl_pct if previous is not None else 0.0
                LOGGER.info("Position closed on exchange symbol=%s last_pct=%.2f", symbol, pct)
                state.risk.record_exit(state.risk.position_size, pct, now)
            state.position = None
        else:
            if position.entry_price is None:
                position.entry_price = state.risk.entry_price
            if position.entry_price:
                pnl, pct = calculate_pnl(
                    position.side, position.entry_price, position.contracts, last_price
                )
                position.unrealized_pnl = pnl
                position.unrealized_pnl_pct = pct
            if self.config.exchange.is_futures:
                state.risk.position_size = position.contracts
                if state.risk.entry_price is None:
                    state.risk.entry_price = position.entry_price
            state.position = position

        state.updated_at = now
        LOGGER.debug(
            "Synced symbol=%s position=%s pending=%d last=%.8f",
            symbol,
            state.position.side if state.position else None,
            len(orders),
            last_price,
        )
        return SyncResult(
            ok=True,
            position_open=state.position is not None,
            pending_orders=len(orders),
        )

    def _exit_reason(self, pct: float) -> str | None:
        if pct >= self.config.exits.take_profit_pct:
            return "take_profit"
        if pct <= -self.config.exits.stop_loss_pct:
            return "stop_loss"
        return None

    def enforce_exit(self, state: TradeState) -> ExitResult | None:
        position = state.position
        if position is None or not position.entry_price:
            return None
        pct = position.unrealized_pnl_pct
        reason = self._exit_reason(pct)
        if reason is None:
            return None

        side = "sell" if position.side == "long" else "buy"
        requested = position.contracts
        if not self.config.exchange.is_futures and state.risk.position_size > 0:
            # Spot balances may include coins this agent never bought.
            requested = state.risk.position_size
        quantity = exit_quantity(
            requested,
            position.contracts,
            min_amount=self.config.risk.min_amount,
            amount_step=self.config.risk.amount_step,
        )
        if quantity <= 0:
            LOGGER.warning(
                "Exit skipped symbol=%s reason=%s held=%s below minimum amount",
                state.symbol,
                reason,
                position.contracts,
            )
            return None

        now = self.clock()
        event = TradeEvent(
            created_at=now,
            symbol=state.symbol,
            event="forced_exit",
            signal=side,
            quantity=quantity,
            price=state.last_price,
            reason=reason,
            payload={"pnl": position.unrealized_pnl, "pnlPct": pct, "side": position.side},
        )
        if self.dry_run:
            event.event = "dry_run"
            self.journal.record(event)
            LOGGER.info(
                "Dry run exit symbol=%s side=%s qty=%s reason=%s pct=%.2f",
                state.symbol,
                side,
                quantity,
                reason,
                pct,
            )
            return ExitResult(closed=False, reason=reason, side=side, quantity=quantity, pnl_pct=pct)

        try:
            order = self.client.submit_market_order(state.symbol, side, quantity, reduce_only=True)
        except ExchangeAPIError as exc:
            LOGGER.error("Forced exit failed symbol=%s reason=%s: %s", state.symbol, reason, exc)
            event.event = "order_failed"
            event.payload["error"] = str(exc)
            self.journal.record(event)
            if self.alerts is not None:
                self.alerts.send(
                    event="exit_failed",
                    message=f"{state.symbol} {reason} exit failed: {exc}",
                    level="error",
                    dedupe_key=f"exit_failed:{state.symbol}",
                )
            return ExitResult(
                closed=False,
                reason=reason,
                side=side,
                quantity=quantity,
                pnl_pct=pct,
                error=str(exc),
            )

        state.risk.record_exit(quantity, pct, now)
        remaining = position.contracts - quantity
        if remaining <= self.config.risk.min_amount:
            state.position = None
        else:
            position.contracts = remaining
        state.last_signal = side
        state.updated_at = now
        event.payload["orderId"] = order.get("id")
        self.journal.record(event)
        LOGGER.info(
            "Forced exit symbol=%s side=%s qty=%s reason=%s pct=%.2f order_id=%s",
            state.symbol,
            side,
            quantity,
            reason,
            pct,
            order.get("id"),
        )
        if self.alerts is not None:
            self.alerts.send(
                event="forced_exit",
                message=f"{state.symbol} closed by {reason} at {pct:.2f}%",
                level="warning",
                context={"qty": quantity, "price": state.last_price},
                dedupe_key=f"forced_exit:{state.symbol}",
            )
        return ExitResult(
            closed=True,
            reason=reason,
            side=side,
            quantity=quantity,
            pnl_pct=pct,
            order_id=order.get("id"),
        )

    def reconcile(self, state: TradeState) -> SyncResult:
        state.risk.roll_day(trading_day(self.clock(), self.config.timezone))
        result = self.sync(state)
        if result.ok:
            self.enforce_exit(state)
            result.position_open = state.position is not None
        return result

    def run(self, symbol: str) -> SyncResult:
        with self.locks.hold(symbol):
            state = self.store.load(symbol)
            result = self.reconcile(state)
            if result.ok:
                self.store.save(state)
        return result

    @staticmethod
    def blocks_entry(state: TradeState) -> bool:
        return state.position is not None or bool(state.pending_orders)
