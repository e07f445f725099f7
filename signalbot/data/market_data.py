from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from signalbot.config import AppConfig, split_symbol
from signalbot.data.candles import Bar
from signalbot.data.exchange_client import ExchangeClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    symbol: str
    base: str
    quote: str
    base_free: float
    base_total: float
    quote_free: float
    quote_total: float
    last_price: float

    @property
    def portfolio_value(self) -> float:
        return self.base_total * self.last_price + self.quote_total

    def balances(self) -> dict[str, Any]:
        return {
            self.base: {"free": self.base_free, "total": self.base_total},
            self.quote: {"free": self.quote_free, "total": self.quote_total},
            "lastPrice": self.last_price,
            "portfolioValue": self.portfolio_value,
        }


class MarketDataService:
    def __init__(self, client: ExchangeClient, config: AppConfig):
        self.client = client
        self.config = config

    def fetch_bars(self, symbol: str) -> list[Bar]:
        bars = self.client.fetch_candles(
            symbol,
            self.config.market_data.timeframe,
            self.config.market_data.history_bars,
        )
        LOGGER.debug("Fetched %d bars for %s", len(bars), symbol)
        return bars

    def account_snapshot(self, symbol: str) -> AccountSnapshot:
        base, quote = split_symbol(symbol)
        balances = self.client.fetch_balance()
        ticker = self.client.fetch_ticker(symbol)
        base_balance = balances.get(base, {})
        quote_balance = balances.get(quote, {})
        return AccountSnapshot(
            symbol=symbol,
            base=base,
            quote=quote,
            base_free=float(base_balance.get("free", 0.0)),
            base_total=float(base_balance.get("total", 0.0)),
            quote_free=float(quote_balance.get("free", 0.0)),
            quote_total=float(quote_balance.get("total", 0.0)),
            last_price=float(ticker["last"]),
        )
