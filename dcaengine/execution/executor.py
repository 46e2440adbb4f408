from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional, Protocol

from dcaengine.exchange.backend.client import BackendClient, BackendError
from dcaengine.execution.errors import TransientExecutionFailure
from dcaengine.market.providers import MarketContextProvider, MarketDataUnavailable


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    FILLED = "filled"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass(frozen=True)
class OrderRequest:
    bot_id: str
    symbol: str
    side: OrderSide
    kind: str  # "entry" | "exit"
    idempotency_key: str
    amount: Optional[float] = None  # quote currency, entries
    quantity: Optional[float] = None  # base units, exits
    reference_price: Optional[float] = None


# =========================
# Execution Result
# =========================
@dataclass(frozen=True)
class OrderResult:
    order_id: Optional[str]
    status: OrderStatus
    fill_price: float = 0.0
    fill_quantity: float = 0.0
    reason: str = ""


class OrderExecutor(Protocol):
    def submit_order(self, req: OrderRequest) -> OrderResult: ...

    def get_order(self, order_id: str) -> OrderResult: ...


def _status(raw) -> OrderStatus:
    s = str(raw or "").lower()
    if s in ("filled", "completed", "closed", "executed"):
        return OrderStatus.FILLED
    if s in ("rejected", "failed", "canceled", "cancelled", "expired"):
        return OrderStatus.REJECTED
    return OrderStatus.PENDING


def _f(v) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return 0.0


# =========================
# Paper Executor
# =========================
class PaperExecutor:
    """
    Fills market orders immediately at the provider's current price.
    Idempotent per key: resubmitting a key returns the original result.
    """

    def __init__(self, market: MarketContextProvider):
        self.market = market
        self._by_key: Dict[str, OrderResult] = {}
        self._by_id: Dict[str, OrderResult] = {}
        self._lock = threading.Lock()

    def submit_order(self, req: OrderRequest) -> OrderResult:
        with self._lock:
            prior = self._by_key.get(req.idempotency_key)
        if prior is not None:
            return prior

        try:
            price = self.market.get_market_context(req.symbol).price
        except MarketDataUnavailable as e:
            raise TransientExecutionFailure(f"paper fill price unavailable: {e}") from e

        if req.side == OrderSide.BUY:
            amount = float(req.amount or 0.0)
            if amount <= 0 or price <= 0:
                res = OrderResult(None, OrderStatus.REJECTED, reason="Invalid order parameters")
            else:
                res = OrderResult(
                    f"paper-{uuid.uuid4().hex[:12]}", OrderStatus.FILLED, price, amount / price
                )
        else:
            qty = float(req.quantity or 0.0)
            if qty <= 0:
                res = OrderResult(None, OrderStatus.REJECTED, reason="Invalid order parameters")
            else:
                res = OrderResult(
                    f"paper-{uuid.uuid4().hex[:12]}", OrderStatus.FILLED, price, qty
                )

        with self._lock:
            self._by_key[req.idempotency_key] = res
            if res.order_id:
                self._by_id[res.order_id] = res
        return res

    def get_order(self, order_id: str) -> OrderResult:
        with self._lock:
            res = self._by_id.get(order_id)
        if res is None:
            return OrderResult(order_id, OrderStatus.REJECTED, reason="unknown order")
        return res


# =========================
# Backend Executor (live)
# =========================
class BackendOrderExecutor:
    """
    Submits market orders through the backend order queue. The backend
    deduplicates on idempotencyKey; transport failures surface as
    TransientExecutionFailure so the engine can retry the same key.
    """

    def __init__(self, client: BackendClient):
        self.client = client

    def _parse(self, data: dict, fallback_id: Optional[str] = None) -> OrderResult:
        if not isinstance(data, dict):
            raise TransientExecutionFailure("empty order response", order_id=fallback_id)
        status = _status(data.get("status"))
        return OrderResult(
            order_id=str(data.get("orderId") or data.get("id") or fallback_id or "") or None,
            status=status,
            fill_price=_f(data.get("executedPrice", data.get("price"))),
            fill_quantity=_f(data.get("executedVolume", data.get("volume"))),
            reason=str(data.get("lastError") or data.get("error") or data.get("reason") or ""),
        )

    def submit_order(self, req: OrderRequest) -> OrderResult:
        payload = {
            "botId": req.bot_id,
            "pair": req.symbol.upper(),
            "type": "market",
            "side": req.side.value,
            "kind": req.kind,
            "idempotencyKey": req.idempotency_key,
        }
        if req.amount is not None:
            payload["amount"] = round(float(req.amount), 8)
            if req.reference_price:
                payload["volume"] = f"{float(req.amount) / float(req.reference_price):.8f}"
        if req.quantity is not None:
            payload["volume"] = f"{float(req.quantity):.8f}"
        if req.reference_price:
            payload["price"] = str(req.reference_price)

        try:
            data = self.client.create_order(payload)
        except BackendError as e:
            # 4xx carries the exchange's rejection text
            if e.status_code is not None and 400 <= e.status_code < 500:
                return OrderResult(None, OrderStatus.REJECTED, reason=e.body or str(e))
            raise TransientExecutionFailure(str(e)) from e

        res = self._parse(data)
        if res.status == OrderStatus.FILLED and res.fill_quantity <= 0 and req.quantity:
            res = replace(res, fill_quantity=float(req.quantity))
        return res

    def get_order(self, order_id: str) -> OrderResult:
        try:
            data = self.client.get_order(order_id)
        except BackendError as e:
            raise TransientExecutionFailure(str(e), order_id=order_id) from e
        return self._parse(data, fallback_id=order_id)
