import pytest

from dcaengine.exchange.backend.client import BackendError
from dcaengine.execution.errors import (
    PermanentExecutionFailure,
    TransientExecutionFailure,
    failure_from_reason,
    is_transient,
)
from dcaengine.execution.executor import (
    BackendOrderExecutor,
    OrderRequest,
    OrderSide,
    OrderStatus,
    PaperExecutor,
)

from conftest import FakeMarket


@pytest.mark.parametrize(
    "reason,transient",
    [
        ("Insufficient funds", True),
        ("EAPI:Rate limit exceeded", True),
        ("Request timeout", True),
        ("Service Unavailable", True),
        ("Invalid order parameters", False),
        ("EGeneral:Permission denied", False),
        ("Unknown asset pair", False),
        ("something nobody has seen", True),
        # transient marker wins
        ("invalid nonce: rate limit", True),
    ],
)
def test_rejection_classification(reason, transient):
    assert is_transient(reason) is transient


def test_configured_markers_override_defaults():
    assert is_transient("Insufficient funds", transient_markers=[], permanent_markers=["insufficient"]) is False


def test_failure_from_reason_types():
    assert isinstance(failure_from_reason("timeout"), TransientExecutionFailure)
    f = failure_from_reason("Invalid order parameters", order_id="o1")
    assert isinstance(f, PermanentExecutionFailure)
    assert f.transient is False
    assert f.order_id == "o1"


class _FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.payloads = []

    def create_order(self, payload):
        self.payloads.append(payload)
        if self.error:
            raise self.error
        return self.response

    def get_order(self, order_id):
        if self.error:
            raise self.error
        return self.response


def _sell(qty=1.5, key="b1:c1:exit:1"):
    return OrderRequest("b1", "btcusd", OrderSide.SELL, "exit", key, quantity=qty, reference_price=100.0)


def test_backend_executor_payload_and_fill():
    client = _FakeClient({"orderId": "q-1", "status": "filled", "executedPrice": "101.5", "executedVolume": "1.5"})
    res = BackendOrderExecutor(client).submit_order(_sell())

    assert res.status == OrderStatus.FILLED
    assert res.order_id == "q-1"
    assert res.fill_price == 101.5
    assert res.fill_quantity == 1.5

    p = client.payloads[0]
    assert p["pair"] == "BTCUSD"
    assert p["side"] == "sell"
    assert p["type"] == "market"
    assert p["idempotencyKey"] == "b1:c1:exit:1"
    assert p["volume"] == "1.50000000"


def test_backend_executor_queued_is_pending():
    client = _FakeClient({"id": 7, "status": "queued"})
    res = BackendOrderExecutor(client).submit_order(_sell())
    assert res.status == OrderStatus.PENDING
    assert res.order_id == "7"


def test_backend_4xx_is_a_rejection():
    err = BackendError("Backend HTTP 400", status_code=400, body="Invalid order parameters")
    res = BackendOrderExecutor(_FakeClient(error=err)).submit_order(_sell())
    assert res.status == OrderStatus.REJECTED
    assert res.reason == "Invalid order parameters"


def test_backend_transport_failure_is_transient():
    err = BackendError("Backend request failed after retries")
    with pytest.raises(TransientExecutionFailure):
        BackendOrderExecutor(_FakeClient(error=err)).submit_order(_sell())


def test_paper_executor_is_idempotent_per_key():
    market = FakeMarket()
    market.set("BTCUSD", 50.0)
    ex = PaperExecutor(market)
    req = OrderRequest("b1", "BTCUSD", OrderSide.BUY, "entry", "b1:c1:entry:1", amount=100.0)

    first = ex.submit_order(req)
    market.set("BTCUSD", 40.0)
    second = ex.submit_order(req)

    assert first == second
    assert first.fill_quantity == 2.0
    assert ex.get_order(first.order_id) == first


def test_paper_executor_rejects_empty_sell():
    market = FakeMarket()
    market.set("BTCUSD", 50.0)
    res = PaperExecutor(market).submit_order(_sell(qty=0.0))
    assert res.status == OrderStatus.REJECTED
    assert not is_transient(res.reason)


def test_paper_executor_without_price_is_transient():
    with pytest.raises(TransientExecutionFailure):
        PaperExecutor(FakeMarket()).submit_order(_sell())
