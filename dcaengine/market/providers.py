# dcaengine/market/providers.py
from __future__ import annotations

import time
from typing import Optional, Protocol

from dcaengine.bots.models import MarketContext
from dcaengine.exchange.backend.client import BackendClient, BackendError


class MarketDataUnavailable(Exception):
    def __init__(self, symbol: str, detail: str = ""):
        super().__init__(f"market data unavailable for {symbol}: {detail}".rstrip(": "))
        self.symbol = symbol


class HoldingsUnavailable(Exception):
    def __init__(self, symbol: str, detail: str = ""):
        super().__init__(f"holdings unavailable for {symbol}: {detail}".rstrip(": "))
        self.symbol = symbol


class MarketContextProvider(Protocol):
    def get_market_context(self, symbol: str) -> MarketContext: ...


class HoldingsSource(Protocol):
    def get_holdings(self, symbol: str) -> float: ...


def _opt_float(v) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None


def _score(v, default: float = 50.0) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return default
    return min(100.0, max(0.0, f))


class BackendMarketProvider:
    """Trend/price feed served by the dashboard backend."""

    def __init__(self, client: BackendClient):
        self.client = client

    def get_market_context(self, symbol: str) -> MarketContext:
        try:
            data = self.client.market_trend(symbol)
        except BackendError as e:
            raise MarketDataUnavailable(symbol, str(e)) from e

        if not isinstance(data, dict):
            raise MarketDataUnavailable(symbol, "empty response")

        price = _opt_float(data.get("price"))
        if price is None:
            raise MarketDataUnavailable(symbol, "missing price")

        return MarketContext(
            symbol=symbol.upper(),
            price=price,
            tech_score=_score(data.get("techScore", data.get("technical_score"))),
            trend_score=_score(data.get("trendScore", data.get("trend_score"))),
            support=_opt_float(data.get("support")),
            resistance=_opt_float(data.get("resistance")),
            as_of_ms=int(time.time() * 1000),
        )


class BackendHoldingsSource:
    """Portfolio balance of the base asset for a symbol."""

    def __init__(self, client: BackendClient):
        self.client = client

    def get_holdings(self, symbol: str) -> float:
        try:
            data = self.client.balance(symbol)
        except BackendError as e:
            raise HoldingsUnavailable(symbol, str(e)) from e

        if not isinstance(data, dict) or "quantity" not in data:
            raise HoldingsUnavailable(symbol, "malformed balance response")
        try:
            return max(0.0, float(data["quantity"]))
        except (TypeError, ValueError) as e:
            raise HoldingsUnavailable(symbol, f"bad quantity {data['quantity']!r}") from e
