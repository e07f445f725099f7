from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from signalbot.clock import ensure_utc, utc_now
from signalbot.config import AppConfig
from signalbot.data.candles import Bar
from signalbot.data.exchange_client import (
    DataUnavailable,
    ExchangeAPIError,
    ExchangeClient,
    ExchangeUnavailable,
)
from signalbot.data.market_data import AccountSnapshot, MarketDataService
from signalbot.execution.reconciler import Reconciler
from signalbot.execution.sizing import (
    InsufficientBalance,
    ensure_affordable,
    entry_quantity,
    exit_quantity,
)
from signalbot.monitoring.alerts import AlertDispatcher
from signalbot.runtime.scheduler import SymbolLocks
from signalbot.storage.journal import Journal
from signalbot.storage.models import TradeEvent, TradeState
from signalbot.storage.state_store import TradeStateStore
from signalbot.strategy.indicators import (
    IndicatorSnapshot,
    InsufficientData,
    compute_snapshots,
    range_volatility,
)
from signalbot.strategy.signals import FLAT, PositionContext, Signal, SignalClassifier

LOGGER = logging.getLogger(__name__)

TRIGGER_PRICE_DECIMALS = 6


class CyclePhase(str, Enum):
    IDLE = "idle"
    COOLING = "cooling"
    FETCHING = "fetching"
    DECIDING = "deciding"
    SIZING = "sizing"
    GATING = "gating"
    SUBMITTING = "submitting"
    UPDATING = "updating"


@dataclass(slots=True)
class CycleResult:
    symbol: str
    status: str
    reason: str | None = None
    signal: Signal | None = None
    quantity: float = 0.0
    price: float | None = None
    order_id: str | None = None
    phase: CyclePhase = CyclePhase.IDLE


@dataclass(slots=True)
class TradeIntent:
    action: str
    order_side: str
    position_side: str
    quantity: float = 0.0
    notes: dict[str, Any] = field(default_factory=dict)

    @property
    def is_entry(self) -> bool:
        return self.action == "entry"


class CycleController:
    """
    Runs one decision cycle per symbol:
    IDLE -> COOLING -> FETCHING -> DECIDING -> SIZING -> GATING -> SUBMITTING -> UPDATING -> IDLE.
    """

    def __init__(
        self,
        config: AppConfig,
        market_data: MarketDataService,
        client: ExchangeClient,
        reconciler: Reconciler,
        store: TradeStateStore,
        journal: Journal,
        locks: SymbolLocks,
        classifier: SignalClassifier,
        stop_event: threading.Event,
        alerts: AlertDispatcher | None = None,
        *,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utc_now,
        waiter: Callable[[float], bool] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.market_data = market_data
        self.client = client
        self.reconciler = reconciler
        self.store = store
        self.journal = journal
        self.locks = locks
        self.classifier = classifier
        self.stop_event = stop_event
        self.alerts = alerts
        self.dry_run = dry_run
        self.clock = clock
        self.waiter = waiter or stop_event.wait
        self._monotonic = monotonic
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()
        self._failures: dict[str, int] = {}
        self._backoff_until: dict[str, float] = {}
        self.phases: dict[str, CyclePhase] = {}

    def _enter(self, symbol: str) -> bool:
        with self._in_flight_lock:
            if symbol in self._in_flight:
                return False
            self._in_flight.add(symbol)
            return True

    def _leave(self, symbol: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(symbol)

    def _set_phase(self, symbol: str, phase: CyclePhase) -> CyclePhase:
        self.phases[symbol] = phase
        LOGGER.debug("Cycle phase symbol=%s phase=%s", symbol, phase.value)
        return phase

    def backoff_remaining(self, symbol: str) -> float:
        until = self._backoff_until.get(symbol)
        if until is None:
            return 0.0
        return max(0.0, until - self._monotonic())

    def _extend_backoff(self, symbol: str) -> float:
        failures = self._failures.get(symbol, 0) + 1
        self._failures[symbol] = failures
        delay = min(
            self.config.schedule.backoff_max_seconds,
            self.config.schedule.cycle_seconds * (2 ** (failures - 1)),
        )
        self._backoff_until[symbol] = self._monotonic() + delay
        return delay

    def _reset_backoff(self, symbol: str) -> None:
        self._failures.pop(symbol, None)
        self._backoff_until.pop(symbol, None)

    def run_cycle(self, symbol: str) -> CycleResult:
        if not self._enter(symbol):
            LOGGER.info("Cycle skipped symbol=%s reason=in_flight", symbol)
            return CycleResult(symbol=symbol, status="skipped", reason="in_flight")
        try:
            remaining = self.backoff_remaining(symbol)
            if remaining > 0:
                LOGGER.info("Cycle skipped symbol=%s reason=backoff remaining=%.1fs", symbol, remaining)
                return CycleResult(symbol=symbol, status="skipped", reason="backoff")
            phase = self._set_phase(symbol, CyclePhase.COOLING)
            cooled_from = self.store.load(symbol).risk.last_trade_at
            wait_seconds = self._cooldown_from(cooled_from, self.clock())
            if wait_seconds > 0:
                # Wait outside the symbol lock so the reconciler keeps running.
                LOGGER.info("Cooling down symbol=%s wait=%.1fs", symbol, wait_seconds)
                if self.waiter(wait_seconds):
                    return CycleResult(symbol=symbol, status="aborted", reason="shutdown", phase=phase)
            with self.locks.hold(symbol):
                return self._run_locked(symbol, cooled_from)
        finally:
            self.phases[symbol] = CyclePhase.IDLE
            self._leave(symbol)

    def cooldown_remaining(self, state: TradeState, now: datetime) -> float:
        return self._cooldown_from(state.risk.last_trade_at, now)

    def _cooldown_from(self, last_trade_at: datetime | None, now: datetime) -> float:
        if last_trade_at is None:
            return 0.0
        elapsed = (ensure_utc(now) - ensure_utc(last_trade_at)).total_seconds()
        return max(0.0, self.config.risk.cooldown_seconds - elapsed)

    @staticmethod
    def position_context(state: TradeState) -> PositionContext:
        if state.position is not None:
            return PositionContext(
                side=state.position.side,
                entry_price=state.position.entry_price or state.risk.entry_price,
                quantity=state.position.contracts,
            )
        if state.risk.position_size > 0:
            return PositionContext(
                side="long",
                entry_price=state.risk.entry_price,
                quantity=state.risk.position_size,
            )
        return FLAT

    def _run_locked(self, symbol: str, cooled_from: datetime | None) -> CycleResult:
        state = self.store.load(symbol)
        sync = self.reconciler.reconcile(state)
        if sync.ok:
            self.store.save(state)

        if state.risk.last_trade_at != cooled_from and self.cooldown_remaining(state, self.clock()) > 0:
            LOGGER.info("Cycle skipped symbol=%s reason=cooldown (trade closed while waiting)", symbol)
            return CycleResult(symbol=symbol, status="skipped", reason="cooldown", phase=CyclePhase.COOLING)

        phase = self._set_phase(symbol, CyclePhase.FETCHING)
        try:
            bars = self.market_data.fetch_bars(symbol)
            current, previous = compute_snapshots(
                bars,
                self.config.indicators,
                min_bars=self.config.market_data.min_bars,
            )
            account = self.market_data.account_snapshot(symbol)
        except InsufficientData as exc:
            LOGGER.info("Cycle skipped symbol=%s reason=insufficient_data (%s)", symbol, exc)
            return CycleResult(symbol=symbol, status="skipped", reason="insufficient_data", phase=phase)
        except DataUnavailable as exc:
            LOGGER.warning("Cycle skipped symbol=%s reason=data_unavailable (%s)", symbol, exc)
            return CycleResult(symbol=symbol, status="skipped", reason="data_unavailable", phase=phase)
        except ExchangeUnavailable as exc:
            delay = self._extend_backoff(symbol)
            LOGGER.warning(
                "Exchange unavailable symbol=%s backoff=%.0fs: %s", symbol, delay, exc
            )
            return CycleResult(symbol=symbol, status="skipped", reason="exchange_unavailable", phase=phase)
        except ExchangeAPIError as exc:
            LOGGER.error("Fetch failed symbol=%s: %s", symbol, exc)
            return CycleResult(symbol=symbol, status="failed", reason="fetch_failed", phase=phase)
        self._reset_backoff(symbol)

        phase = self._set_phase(symbol, CyclePhase.DECIDING)
        context = self.position_context(state)
        signal = self.classifier.classify(current, previous, context)
        state.last_signal = signal.value
        state.last_price = account.last_price
        LOGGER.info(
            "Decision symbol=%s signal=%s price=%.8f ema_fast=%.8f ema_slow=%.8f rsi=%.2f",
            symbol,
            signal.value,
            current.price,
            current.ema_fast,
            current.ema_slow,
            current.rsi,
        )

        phase = self._set_phase(symbol, CyclePhase.SIZING)
        intent, reason = self._resolve_intent(signal, context)
        if intent is not None:
            intent.quantity = self._size(intent, state, context, current, bars, account)

        phase = self._set_phase(symbol, CyclePhase.GATING)
        if intent is not None:
            reason = self._gate(intent, state, account)
        if intent is None or reason is not None:
            return self._reject(state, signal, reason or "hold", current, account, phase)

        phase = self._set_phase(symbol, CyclePhase.SUBMITTING)
        return self._submit(state, signal, intent, context, current, account)

    def _resolve_intent(
        self,
        signal: Signal,
        context: PositionContext,
    ) -> tuple[TradeIntent | None, str | None]:
        if signal == Signal.HOLD:
            return None, "hold"
        if signal == Signal.BUY and context.side == "short":
            return TradeIntent(action="exit", order_side="buy", position_side="short"), None
        if signal == Signal.SELL:
            if context.side == "long" and context.is_open:
                return TradeIntent(action="exit", order_side="sell", position_side="long"), None
            if context.is_open:
                return None, "position_open"
            return None, "no_position"
        if context.is_open:
            return None, "position_open"
        if signal == Signal.SHORT:
            if not self.config.exchange.is_futures:
                return None, "short_on_spot"
            return TradeIntent(action="entry", order_side="sell", position_side="short"), None
        return TradeIntent(action="entry", order_side="buy", position_side="long"), None

    def _size(
        self,
        intent: TradeIntent,
        state: TradeState,
        context: PositionContext,
        current: IndicatorSnapshot,
        bars: list[Bar],
        account: AccountSnapshot,
    ) -> float:
        risk = self.config.risk
        if intent.is_entry:
            if risk.volatility_source == "range":
                volatility = range_volatility(bars, risk.volatility_window)
            else:
                volatility = current.atr
            intent.notes["volatility"] = volatility
            return entry_quantity(
                portfolio_value=account.portfolio_value,
                risk_percent=risk.risk_percent,
                volatility=volatility,
                last_price=account.last_price,
                free_balance=account.quote_free,
                max_position_fraction=risk.max_position_fraction,
                min_amount=risk.min_amount,
                amount_step=risk.amount_step,
                floor_volatility=risk.floor_volatility,
            )
        requested = context.quantity
        held = context.quantity
        if not self.config.exchange.is_futures:
            if state.risk.position_size > 0:
                requested = state.risk.position_size
            held = account.base_free
        return exit_quantity(
            requested,
            held,
            min_amount=risk.min_amount,
            amount_step=risk.amount_step,
        )

    def _gate(self, intent: TradeIntent, state: TradeState, account: AccountSnapshot) -> str | None:
        risk_cfg = self.config.risk
        risk = state.risk
        if state.pending_orders:
            return "pending_orders"
        if intent.is_entry:
            if state.position is not None:
                return "position_open"
            if risk.trades_today >= risk_cfg.max_trades_per_day:
                return "daily_trade_cap"
            if risk.daily_profit_pct <= -risk_cfg.daily_loss_limit_pct:
                return "daily_loss_limit"
            if risk.consecutive_losses >= risk_cfg.max_consecutive_losses:
                return "consecutive_losses"
        if intent.quantity <= 0:
            return "quantity_zero"
        if intent.is_entry:
            leverage = risk_cfg.leverage if self.config.exchange.is_futures else 1
            try:
                ensure_affordable(
                    intent.quantity,
                    account.last_price,
                    account.quote_free,
                    leverage=leverage,
                    asset=account.quote,
                )
            except InsufficientBalance as exc:
                LOGGER.info("Entry not affordable symbol=%s: %s", state.symbol, exc)
                return "insufficient_balance"
        elif not self.config.exchange.is_futures and account.base_free < intent.quantity:
            return "insufficient_balance"
        return None

    def _event(
        self,
        state: TradeState,
        event: str,
        signal: Signal,
        quantity: float | None,
        current: IndicatorSnapshot,
        account: AccountSnapshot,
        reason: str | None = None,
        **payload: Any,
    ) -> TradeEvent:
        return TradeEvent(
            created_at=self.clock(),
            symbol=state.symbol,
            event=event,
            signal=signal.value,
            quantity=quantity,
            price=account.last_price,
            balances_before=account.balances(),
            reason=reason,
            payload={"indicators": current.to_dict(), **payload},
        )

    def _reject(
        self,
        state: TradeState,
        signal: Signal,
        reason: str,
        current: IndicatorSnapshot,
        account: AccountSnapshot,
        phase: CyclePhase,
    ) -> CycleResult:
        state.updated_at = self.clock()
        self.store.save(state)
        if reason == "hold":
            LOGGER.debug("Holding symbol=%s", state.symbol)
            return CycleResult(symbol=state.symbol, status="hold", reason=reason, signal=signal, phase=phase)
        LOGGER.info("Signal rejected symbol=%s signal=%s reason=%s", state.symbol, signal.value, reason)
        self.journal.record(self._event(state, "rejected", signal, None, current, account, reason))
        return CycleResult(
            symbol=state.symbol,
            status="rejected",
            reason=reason,
            signal=signal,
            price=account.last_price,
            phase=phase,
        )

    def _submit(
        self,
        state: TradeState,
        signal: Signal,
        intent: TradeIntent,
        context: PositionContext,
        current: IndicatorSnapshot,
        account: AccountSnapshot,
    ) -> CycleResult:
        symbol = state.symbol
        if self.stop_event.is_set():
            LOGGER.info("Shutdown requested, not submitting symbol=%s", symbol)
            return CycleResult(
                symbol=symbol,
                status="aborted",
                reason="shutdown",
                signal=signal,
                phase=CyclePhase.SUBMITTING,
            )

        if self.dry_run:
            self.journal.record(
                self._event(
                    state,
                    "dry_run",
                    signal,
                    intent.quantity,
                    current,
                    account,
                    intent.action,
                    side=intent.order_side,
                )
            )
            LOGGER.info(
                "Dry run order symbol=%s side=%s qty=%s price=%.8f",
                symbol,
                intent.order_side,
                intent.quantity,
                account.last_price,
            )
            self.store.save(state)
            return CycleResult(
                symbol=symbol,
                status="dry_run",
                signal=signal,
                quantity=intent.quantity,
                price=account.last_price,
                phase=CyclePhase.SUBMITTING,
            )

        try:
            order = self.client.submit_market_order(
                symbol,
                intent.order_side,
                intent.quantity,
                reduce_only=not intent.is_entry,
            )
        except ExchangeAPIError as exc:
            LOGGER.warning(
                "Order failed symbol=%s side=%s qty=%s: %s",
                symbol,
                intent.order_side,
                intent.quantity,
                exc,
            )
            self.journal.record(
                self._event(
                    state,
                    "order_failed",
                    signal,
                    intent.quantity,
                    current,
                    account,
                    getattr(exc, "reason", None) or str(exc),
                )
            )
            self.store.save(state)
            if self.alerts is not None:
                self.alerts.send(
                    event="order_failed",
                    message=f"{symbol} {intent.order_side} {intent.quantity} failed: {exc}",
                    level="warning",
                    dedupe_key=f"order_failed:{symbol}",
                )
            return CycleResult(
                symbol=symbol,
                status="failed",
                reason="order_rejected",
                signal=signal,
                quantity=intent.quantity,
                price=account.last_price,
                phase=CyclePhase.SUBMITTING,
            )

        self._set_phase(symbol, CyclePhase.UPDATING)
        fill_price = order.get("average") or account.last_price
        filled = order.get("filled") or intent.quantity
        now = self.clock()
        protective: list[str] = []
        try:
            if intent.is_entry:
                state.risk.record_entry(fill_price, filled, now)
                if self.config.exchange.is_futures and self.config.exits.protective_orders_enabled:
                    protective = self._place_protective_orders(symbol, intent, filled, fill_price)
            else:
                pct = context.pnl_pct(fill_price) or 0.0
                state.risk.record_exit(filled, round(pct, 2), now)
                if filled >= context.quantity:
                    state.position = None
            self.reconciler.sync(state)
        finally:
            state.updated_at = now
            self.store.save(state)

        balances_after = self._balances_after(symbol)
        event = self._event(
            state,
            "order_done",
            signal,
            filled,
            current,
            account,
            intent.action,
            side=intent.order_side,
            orderId=order.get("id"),
            fillPrice=fill_price,
            protectiveOrders=protective,
        )
        event.balances_after = balances_after
        self.journal.record(event)
        LOGGER.info(
            "Order done symbol=%s side=%s qty=%s price=%.8f order_id=%s",
            symbol,
            intent.order_side,
            filled,
            fill_price,
            order.get("id"),
        )
        return CycleResult(
            symbol=symbol,
            status="submitted",
            signal=signal,
            quantity=filled,
            price=fill_price,
            order_id=order.get("id"),
            phase=CyclePhase.UPDATING,
        )

    def _place_protective_orders(
        self,
        symbol: str,
        intent: TradeIntent,
        quantity: float,
        fill_price: float,
    ) -> list[str]:
        exits = self.config.exits
        close_side = "sell" if intent.position_side == "long" else "buy"
        if intent.position_side == "long":
            stop_price = fill_price * (1 - exits.protective_stop_pct / 100)
            target_price = fill_price * (1 + exits.protective_take_profit_pct / 100)
        else:
            stop_price = fill_price * (1 + exits.protective_stop_pct / 100)
            target_price = fill_price * (1 - exits.protective_take_profit_pct / 100)
        order_ids: list[str] = []
        for kind, trigger in (("stop", stop_price), ("take_profit", target_price)):
            try:
                placed = self.client.submit_conditional_order(
                    symbol,
                    kind,
                    close_side,
                    quantity,
                    round(trigger, TRIGGER_PRICE_DECIMALS),
                )
            except ExchangeAPIError as exc:
                LOGGER.error("Protective %s order failed symbol=%s: %s", kind, symbol, exc)
                if self.alerts is not None:
                    self.alerts.send(
                        event="protective_order_failed",
                        message=f"{symbol} {kind} order failed: {exc}",
                        level="error",
                        dedupe_key=f"protective:{symbol}:{kind}",
                    )
                continue
            order_ids.append(placed.get("id", ""))
        return order_ids

    def _balances_after(self, symbol: str) -> dict[str, Any]:
        try:
            return self.market_data.account_snapshot(symbol).balances()
        except ExchangeAPIError as exc:
            LOGGER.warning("Could not read balances after order symbol=%s: %s", symbol, exc)
            return {}
