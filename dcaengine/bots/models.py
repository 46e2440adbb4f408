# dcaengine/bots/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dcaengine.bots.errors import InvalidBotConfig


class BotStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    EXITING = "exiting"
    EXIT_FAILED = "exit_failed"
    COMPLETED = "completed"
    STOPPED = "stopped"


class EntryStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    FAILED = "failed"


class OrderKind(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class BotConfig(BaseModel):
    """Operator-editable ladder configuration. Immutable once built."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    initial_order_amount: float = Field(gt=0)
    trade_multiplier: float = Field(default=1.0, ge=1)
    re_entry_count: int = Field(ge=1)
    step_percent: float = Field(gt=0, lt=100)
    step_multiplier: float = Field(default=1.0, ge=1)
    tp_target: float = Field(gt=0)
    exit_percentage: float = Field(default=100.0, ge=1, le=100)
    re_entry_delay: float = Field(default=0.0, ge=0)  # minutes
    support_resistance_enabled: bool = False
    trend_alignment_enabled: bool = False

    @property
    def max_entries(self) -> int:
        return int(self.re_entry_count) + 1

    @classmethod
    def build(cls, data: Dict[str, Any]) -> "BotConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidBotConfig(str(e)) from e

    def merged(self, partial: Dict[str, Any]) -> "BotConfig":
        """Apply a partial update and revalidate the whole config."""
        data = self.model_dump()
        data.update({k: v for k, v in (partial or {}).items() if v is not None})
        return BotConfig.build(data)


@dataclass
class MarketContext:
    symbol: str
    price: float
    tech_score: float = 50.0
    trend_score: float = 50.0
    support: Optional[float] = None
    resistance: Optional[float] = None
    as_of_ms: int = 0
    stale: bool = False


@dataclass
class BotEntry:
    entry_number: int
    price: float
    quantity: float
    order_amount: float
    status: EntryStatus = EntryStatus.PENDING
    order_id: Optional[str] = None
    cycle_number: int = 1
    created_ms: int = 0
    filled_ms: int = 0
    source: str = "bot_execution"


@dataclass
class PendingOrder:
    kind: OrderKind
    idempotency_key: str
    order_id: Optional[str] = None
    quantity: float = 0.0
    amount: float = 0.0
    submitted_ms: int = 0


@dataclass
class ReconciledMetrics:
    current_holdings: float = 0.0
    average_purchase_price: float = 0.0
    total_invested: float = 0.0
    current_price: float = 0.0
    current_value: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    current_tp_price: Optional[float] = None
    next_entry_price: Optional[float] = None
    holdings_stale: bool = False
    as_of_ms: int = 0


@dataclass
class BotInstance:
    id: str
    symbol: str
    config: BotConfig
    status: BotStatus = BotStatus.ACTIVE
    entries: List[BotEntry] = field(default_factory=list)
    average_purchase_price: float = 0.0
    held_quantity: float = 0.0
    last_entry_ms: int = 0
    exit_failure_reason: Optional[str] = None
    exit_failure_ms: int = 0
    exit_attempts: int = 0
    # exit orders submitted this cycle; keys stay unique across retries
    exit_sequence: int = 0
    next_exit_retry_ms: int = 0
    tp_reached: bool = False
    pending_order: Optional[PendingOrder] = None
    cycle_number: int = 1
    created_ms: int = 0
    updated_ms: int = 0
    last_metrics: Optional[ReconciledMetrics] = None

    @property
    def cycle_entries(self) -> List[BotEntry]:
        return [e for e in self.entries if e.cycle_number == self.cycle_number]

    @property
    def filled_entries(self) -> List[BotEntry]:
        return [e for e in self.cycle_entries if e.status == EntryStatus.FILLED]

    @property
    def current_entry_count(self) -> int:
        return len(self.filled_entries)

    @property
    def last_fill(self) -> Optional[BotEntry]:
        filled = self.filled_entries
        if not filled:
            return None
        return max(filled, key=lambda e: e.entry_number)


@dataclass
class BotView:
    """Operator-facing projection: bot + reconciled metrics + display status."""

    bot: BotInstance
    metrics: ReconciledMetrics
    display_status: str
    next_action: str

    def as_dict(self) -> Dict[str, Any]:
        b = self.bot
        m = self.metrics
        return {
            "id": b.id,
            "symbol": b.symbol,
            "status": b.status.value,
            "display_status": self.display_status,
            "next_action": self.next_action,
            "config": b.config.model_dump(),
            "cycle_number": b.cycle_number,
            "current_entry_count": b.current_entry_count,
            "average_purchase_price": b.average_purchase_price,
            "last_entry_ms": b.last_entry_ms,
            "exit_failure_reason": b.exit_failure_reason,
            "exit_failure_ms": b.exit_failure_ms or None,
            "exit_attempts": b.exit_attempts,
            "pending_order": (
                {
                    "kind": b.pending_order.kind.value,
                    "idempotency_key": b.pending_order.idempotency_key,
                    "order_id": b.pending_order.order_id,
                }
                if b.pending_order
                else None
            ),
            "entries": [
                {
                    "entry_number": e.entry_number,
                    "cycle_number": e.cycle_number,
                    "price": e.price,
                    "quantity": e.quantity,
                    "order_amount": e.order_amount,
                    "status": e.status.value,
                    "order_id": e.order_id,
                    "created_ms": e.created_ms,
                    "filled_ms": e.filled_ms,
                }
                for e in b.entries
            ],
            "current_holdings": m.current_holdings,
            "total_invested": m.total_invested,
            "current_price": m.current_price,
            "current_value": m.current_value,
            "unrealized_pnl": m.unrealized_pnl,
            "unrealized_pnl_percent": m.unrealized_pnl_percent,
            "current_tp_price": m.current_tp_price,
            "next_entry_price": m.next_entry_price,
            "holdings_stale": m.holdings_stale,
        }
