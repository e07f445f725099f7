from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable

import ccxt

from signalbot.config import ExchangeConfig, split_symbol
from signalbot.data.candles import Bar, bars_from_ohlcv
from signalbot.storage.models import PendingOrder, PositionRecord

LOGGER = logging.getLogger(__name__)


class ExchangeAPIError(RuntimeError):
    """Non-retryable exchange error."""


class ExchangeUnavailable(ExchangeAPIError):
    """Network failure, timeout or exchange maintenance."""


class DataUnavailable(ExchangeAPIError):
    """The exchange answered but returned no usable market data."""


class OrderRejected(ExchangeAPIError):
    def __init__(self, reason: str):
        super().__init__(f"order rejected: {reason}")
        self.reason = reason


class ExchangeAuthError(ExchangeAPIError):
    """Invalid or missing API credentials."""


CONDITIONAL_ORDER_TYPES = {
    "stop": "STOP_MARKET",
    "take_profit": "TAKE_PROFIT_MARKET",
}


@dataclass(slots=True)
class ExchangeClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    network_errors: int = 0
    rejected_orders: int = 0
    auth_failures: int = 0


def build_exchange(config: ExchangeConfig, api_key: str, api_secret: str) -> Any:
    exchange_class = getattr(ccxt, config.exchange_id, None)
    if exchange_class is None:
        raise ValueError(f"Unknown exchange: {config.exchange_id}")
    exchange = exchange_class(
        {
            "apiKey": api_key,
            "secret": api_secret,
            "timeout": config.timeout_ms,
            "enableRateLimit": True,
            "options": {
                "defaultType": config.market_type,
                "recvWindow": config.recv_window_ms,
                "adjustForTimeDifference": True,
            },
        }
    )
    if config.sandbox:
        exchange.set_sandbox_mode(True)
    return exchange


def _float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class ExchangeClient:
    """
    Thin gateway over a ccxt exchange instance.

    Read calls are retried on ccxt network errors with exponential backoff
    and jitter. Market orders are sent exactly once.
    """

    def __init__(
        self,
        exchange: Any,
        *,
        market_type: str = "spot",
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 10.0,
        dust_amount: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.exchange = exchange
        self.market_type = market_type
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.dust_amount = max(0.0, float(dust_amount))
        self._sleep = sleep
        self._metrics = ExchangeClientMetrics()
        self._metrics_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ExchangeConfig,
        api_key: str,
        api_secret: str,
        *,
        dust_amount: float = 0.0,
    ) -> "ExchangeClient":
        return cls(
            build_exchange(config, api_key, api_secret),
            market_type=config.market_type,
            request_max_attempts=config.request_max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
            dust_amount=dust_amount,
        )

    @property
    def is_futures(self) -> bool:
        return self.market_type == "future"

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str) -> None:
        exponential = min(
            self.backoff_max_seconds,
            self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
        )
        jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
        sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying exchange call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        self._sleep(sleep_seconds)

    def _call(self, endpoint: str, *args: Any, retry: bool = True, **kwargs: Any) -> Any:
        method = getattr(self.exchange, endpoint)
        attempts = self.request_max_attempts if retry else 1
        for attempt in range(1, attempts + 1):
            self._metric_add("total_requests", 1)
            try:
                return method(*args, **kwargs)
            except ccxt.AuthenticationError as exc:
                self._metric_add("auth_failures", 1)
                raise ExchangeAuthError(f"{endpoint}: {exc}") from exc
            except (ccxt.InsufficientFunds, ccxt.InvalidOrder) as exc:
                self._metric_add("rejected_orders", 1)
                raise OrderRejected(str(exc)) from exc
            except ccxt.NetworkError as exc:
                self._metric_add("network_errors", 1)
                if attempt >= attempts:
                    raise ExchangeUnavailable(f"{endpoint}: {type(exc).__name__}: {exc}") from exc
                self._sleep_retry(
                    endpoint=endpoint,
                    attempt=attempt,
                    reason=f"network:{type(exc).__name__}",
                )
            except ccxt.BaseError as exc:
                raise ExchangeAPIError(f"{endpoint}: {type(exc).__name__}: {exc}") from exc
        raise ExchangeUnavailable(f"Could not complete exchange call {endpoint}")

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> list[Bar]:
        rows = self._call("fetch_ohlcv", symbol, timeframe, limit=limit)
        bars = bars_from_ohlcv(rows or [])
        if not bars:
            raise DataUnavailable(f"no OHLCV data for {symbol} {timeframe}")
        return bars

    def fetch_balance(self) -> dict[str, dict[str, float]]:
        raw = self._call("fetch_balance") or {}
        free = raw.get("free") or {}
        total = raw.get("total") or {}
        balances: dict[str, dict[str, float]] = {}
        for asset in set(free) | set(total):
            balances[str(asset).upper()] = {
                "free": _float(free.get(asset)),
                "total": _float(total.get(asset)),
            }
        return balances

    def fetch_ticker(self, symbol: str) -> dict[str, float]:
        raw = self._call("fetch_ticker", symbol) or {}
        last = raw.get("last")
        if last is None:
            last = raw.get("close")
        if last is None:
            raise DataUnavailable(f"ticker for {symbol} has no last price")
        return {"last": float(last)}

    def fetch_open_positions(self, symbols: Iterable[str]) -> list[PositionRecord]:
        wanted = list(symbols)
        if not self.is_futures:
            return self._spot_positions(wanted)
        raw_positions = self._call("fetch_positions", wanted) or []
        by_pair = {split_symbol(symbol): symbol for symbol in wanted}
        records: list[PositionRecord] = []
        for item in raw_positions:
            raw_symbol = item.get("symbol")
            if not raw_symbol or "/" not in raw_symbol:
                continue
            symbol = by_pair.get(split_symbol(raw_symbol))
            contracts = abs(_float(item.get("contracts")))
            if symbol is None or contracts <= 0:
                continue
            side = str(item.get("side") or "long").lower()
            records.append(
                PositionRecord(
                    symbol=symbol,
                    side="short" if side == "short" else "long",
                    entry_price=_float(item.get("entryPrice")) or None,
                    contracts=contracts,
                    unrealized_pnl=_float(item.get("unrealizedPnl")),
                    unrealized_pnl_pct=_float(item.get("percentage")),
                )
            )
        return records

    def _spot_positions(self, symbols: list[str]) -> list[PositionRecord]:
        # Spot venues have no position endpoint; a held base balance is a long.
        balances = self.fetch_balance()
        records: list[PositionRecord] = []
        for symbol in symbols:
            base, _ = split_symbol(symbol)
            held = balances.get(base, {}).get("total", 0.0)
            if held <= self.dust_amount or held <= 0:
                continue
            records.append(
                PositionRecord(symbol=symbol, side="long", entry_price=None, contracts=held)
            )
        return records

    def fetch_open_orders(self, symbol: str) -> list[PendingOrder]:
        raw_orders = self._call("fetch_open_orders", symbol) or []
        orders: list[PendingOrder] = []
        for item in raw_orders:
            price = item.get("price")
            if price is None:
                price = item.get("triggerPrice") or item.get("stopPrice")
            orders.append(
                PendingOrder(
                    id=str(item.get("id") or ""),
                    type=str(item.get("type") or ""),
                    side=str(item.get("side") or ""),
                    price=_float(price) if price is not None else None,
                    amount=_float(item.get("amount")),
                    status=str(item.get("status") or "open"),
                )
            )
        return orders

    def submit_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        *,
        reduce_only: bool = False,
    ) -> dict[str, Any]:
        if side not in {"buy", "sell"}:
            raise ValueError(f"Unsupported order side {side}")
        if quantity <= 0:
            raise OrderRejected(f"non-positive quantity {quantity}")
        params: dict[str, Any] = {}
        if reduce_only and self.is_futures:
            params["reduceOnly"] = True
        LOGGER.info("Submitting market order symbol=%s side=%s qty=%s", symbol, side, quantity)
        raw = self._call(
            "create_order", symbol, "market", side, quantity, None, params, retry=False
        ) or {}
        return {
            "id": str(raw.get("id") or ""),
            "status": raw.get("status"),
            "filled": _float(raw.get("filled"), quantity),
            "average": _float(raw.get("average")) or None,
        }

    def submit_conditional_order(
        self,
        symbol: str,
        kind: str,
        side: str,
        quantity: float,
        trigger_price: float,
    ) -> dict[str, Any]:
        order_type = CONDITIONAL_ORDER_TYPES.get(kind)
        if order_type is None:
            raise ValueError(f"Unsupported conditional order kind {kind}")
        params = {"stopPrice": trigger_price, "reduceOnly": True}
        raw = self._call("create_order", symbol, order_type, side, quantity, None, params) or {}
        return {"id": str(raw.get("id") or "")}

    def set_leverage(self, symbol: str, multiplier: int) -> None:
        if not self.is_futures:
            LOGGER.debug("Leverage ignored on spot symbol=%s", symbol)
            return
        self._call("set_leverage", multiplier, symbol)
        LOGGER.info("Leverage set symbol=%s leverage=%sx", symbol, multiplier)
