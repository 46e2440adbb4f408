from collections import deque
from typing import Dict, List, Optional

import pytest

from dcaengine.bots.models import BotConfig, BotInstance, BotStatus, MarketContext
from dcaengine.core.config import Settings
from dcaengine.execution.executor import OrderRequest, OrderResult, OrderStatus
from dcaengine.market.providers import HoldingsUnavailable, MarketDataUnavailable
from dcaengine.persistence.db import DB
from dcaengine.runner.engine import DCAEngine

T0 = 1_700_000_000_000  # arbitrary epoch ms


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit a real backend or write into the repo.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("BACKEND_BASE_URL", "http://backend.invalid/api")
    monkeypatch.setenv("BACKEND_API_KEY", "")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "dca.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("AUTOSTART_SCHEDULER", "false")


# ---------------- fakes ----------------


class FakeClock:
    def __init__(self, now_ms: int = T0):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, *, minutes: float = 0, seconds: float = 0) -> None:
        self.now_ms += int(minutes * 60_000 + seconds * 1000)


class FakeMarket:
    def __init__(self):
        self.ctx: Dict[str, MarketContext] = {}
        self.down = False

    def set(self, symbol: str, price: float, tech: float = 60.0, trend: float = 60.0, **kw):
        self.ctx[symbol.upper()] = MarketContext(
            symbol=symbol.upper(), price=price, tech_score=tech, trend_score=trend, **kw
        )

    def get_market_context(self, symbol: str) -> MarketContext:
        if self.down or symbol.upper() not in self.ctx:
            raise MarketDataUnavailable(symbol, "fake outage")
        return self.ctx[symbol.upper()]


class FakeHoldings:
    def __init__(self):
        self.qty: Dict[str, float] = {}
        self.down = False

    def get_holdings(self, symbol: str) -> float:
        if self.down:
            raise HoldingsUnavailable(symbol, "fake outage")
        return self.qty.get(symbol.upper(), 0.0)


class ScriptedExecutor:
    """
    Fills at the market price unless a scripted response is queued.
    Queue items: OrderResult, or an Exception instance to raise.
    """

    def __init__(self, market: FakeMarket):
        self.market = market
        self.script: deque = deque()
        self.requests: List[OrderRequest] = []
        self.orders: Dict[str, OrderResult] = {}
        self._n = 0

    def queue(self, *items) -> None:
        self.script.extend(items)

    def submit_order(self, req: OrderRequest) -> OrderResult:
        self.requests.append(req)
        if self.script:
            item = self.script.popleft()
            if isinstance(item, Exception):
                raise item
            if item.order_id:
                self.orders[item.order_id] = item
            return item

        self._n += 1
        price = self.market.get_market_context(req.symbol).price
        qty = req.quantity if req.quantity is not None else req.amount / price
        res = OrderResult(f"o{self._n}", OrderStatus.FILLED, price, qty)
        self.orders[res.order_id] = res
        return res

    def get_order(self, order_id: str) -> OrderResult:
        return self.orders[order_id]


# ---------------- fixtures ----------------


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        DB_PATH=str(tmp_path / "dca.db"),
        AUDIT_JSONL_PATH=str(tmp_path / "audit.jsonl"),
        EXIT_RETRY_INITIAL_SECONDS=10,
        EXIT_RETRY_BACKOFF=2,
        EXIT_MAX_TRANSIENT_ATTEMPTS=3,
        MAX_CONCURRENT_BOTS=4,
        BOT_LOCK_TIMEOUT_SECONDS=2,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture
def executor(market) -> ScriptedExecutor:
    return ScriptedExecutor(market)


@pytest.fixture
def make_engine(cfg, clock, market, executor):
    def _make(holdings: Optional[FakeHoldings] = None, db: Optional[DB] = None) -> DCAEngine:
        return DCAEngine(
            market,
            executor,
            holdings,
            db=db or DB(cfg.DB_PATH),
            cfg=cfg,
            clock=clock,
        )

    return _make


def make_config(**overrides) -> BotConfig:
    base = dict(
        initial_order_amount=100.0,
        trade_multiplier=2.0,
        re_entry_count=3,
        step_percent=2.0,
        step_multiplier=1.5,
        tp_target=3.0,
    )
    base.update(overrides)
    return BotConfig(**base)


def make_bot(config: Optional[BotConfig] = None, **fields) -> BotInstance:
    return BotInstance(
        id=fields.pop("id", "bot-1"),
        symbol=fields.pop("symbol", "BTCUSD"),
        config=config or make_config(),
        status=fields.pop("status", BotStatus.ACTIVE),
        **fields,
    )
