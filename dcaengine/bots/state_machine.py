# dcaengine/bots/state_machine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from dcaengine.bots.errors import InvalidTransition, OrderAlreadyPending
from dcaengine.bots.models import (
    BotEntry,
    BotInstance,
    BotStatus,
    EntryStatus,
    OrderKind,
    PendingOrder,
)
from dcaengine.bots.reconciliation import apply_buy_fill, apply_sell_fill

log = logging.getLogger("dcaengine.state")

A = BotStatus.ACTIVE
P = BotStatus.PAUSED
X = BotStatus.EXITING
F = BotStatus.EXIT_FAILED
C = BotStatus.COMPLETED
S = BotStatus.STOPPED

# event -> states it may fire from
TRANSITIONS: Dict[str, FrozenSet[BotStatus]] = {
    "pause": frozenset({A}),
    "resume": frozenset({P, F, C, S}),
    "stop": frozenset({A, P}),
    "exit_trigger": frozenset({A}),
    "manual_exit": frozenset({A, P}),
    "exit_filled": frozenset({X}),
    "exit_rejected": frozenset({X}),
    "retry_exit": frozenset({F}),
    "submit_exit": frozenset({X}),
    "submit_entry": frozenset({A}),
}

_EXIT_STATES = frozenset({X, F})


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_seconds: float = 10.0
    max_seconds: float = 3600.0
    backoff: float = 2.0

    def delay_ms(self, attempt: int) -> int:
        base = self.initial_seconds * self.backoff ** max(0, int(attempt) - 1)
        return int(min(base, self.max_seconds) * 1000)


def entry_key(bot: BotInstance, entry_number: int) -> str:
    return f"{bot.id}:c{bot.cycle_number}:entry:{entry_number}"


def exit_key(bot: BotInstance) -> str:
    return f"{bot.id}:c{bot.cycle_number}:exit:{bot.exit_sequence + 1}"


class BotStateMachine:
    """
    Applies lifecycle transitions to a BotInstance. The only writer of
    `status`, `pending_order` and the exit-failure fields.
    """

    def __init__(self, retry: Optional[RetryPolicy] = None):
        self.retry = retry or RetryPolicy()

    # ---------------- INTERNAL HELPERS ----------------

    def _require(self, bot: BotInstance, event: str) -> None:
        allowed = TRANSITIONS[event]
        if bot.status not in allowed:
            raise InvalidTransition(bot.id, bot.status.value, event)

    def _set_status(self, bot: BotInstance, status: BotStatus, now_ms: int) -> None:
        prev = bot.status
        bot.status = status
        bot.updated_ms = int(now_ms)
        if status not in _EXIT_STATES:
            bot.exit_failure_reason = None
            bot.exit_failure_ms = 0
            bot.exit_attempts = 0
            bot.next_exit_retry_ms = 0
        if prev != status:
            log.info("bot %s: %s -> %s", bot.id, prev.value, status.value)

    def _require_no_pending(self, bot: BotInstance, key: str) -> None:
        if bot.pending_order is not None:
            raise OrderAlreadyPending(bot.id, bot.pending_order.idempotency_key or key)

    # ---------------- OPERATOR ----------------

    def pause(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "pause")
        self._set_status(bot, P, now_ms)

    def resume(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "resume")
        # from exit_failed the open position stays in its current cycle
        if bot.status == C:
            # a finished ladder starts over; held remainder keeps its basis
            bot.cycle_number += 1
            bot.exit_sequence = 0
            bot.last_entry_ms = 0
            bot.tp_reached = False
        self._set_status(bot, A, now_ms)

    def stop(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "stop")
        self._set_status(bot, S, now_ms)

    def manual_exit(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "manual_exit")
        if bot.pending_order is not None and bot.pending_order.kind == OrderKind.EXIT:
            raise OrderAlreadyPending(bot.id, bot.pending_order.idempotency_key)
        self._set_status(bot, X, now_ms)
        bot.next_exit_retry_ms = 0

    def retry_exit(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "retry_exit")
        self._set_status(bot, X, now_ms)
        # operator retry restores the full auto-retry budget
        bot.exit_attempts = 0
        bot.next_exit_retry_ms = 0

    # ---------------- EVALUATOR-DRIVEN ----------------

    def trigger_exit(self, bot: BotInstance, now_ms: int) -> None:
        self._require(bot, "exit_trigger")
        self._set_status(bot, X, now_ms)
        bot.next_exit_retry_ms = 0

    # ---------------- ENTRY ORDERS ----------------

    def entry_submitted(
        self,
        bot: BotInstance,
        *,
        entry_number: int,
        price: float,
        quantity: float,
        order_amount: float,
        order_id: Optional[str],
        now_ms: int,
    ) -> BotEntry:
        self._require(bot, "submit_entry")
        key = entry_key(bot, entry_number)
        self._require_no_pending(bot, key)
        if bot.current_entry_count >= bot.config.max_entries:
            raise InvalidTransition(bot.id, bot.status.value, "submit_entry beyond max entries")
        if entry_number != bot.current_entry_count + 1:
            raise InvalidTransition(bot.id, bot.status.value, f"submit_entry #{entry_number}")

        entry = BotEntry(
            entry_number=entry_number,
            price=float(price),
            quantity=float(quantity),
            order_amount=float(order_amount),
            status=EntryStatus.PENDING,
            order_id=order_id,
            cycle_number=bot.cycle_number,
            created_ms=int(now_ms),
        )
        bot.entries.append(entry)
        bot.pending_order = PendingOrder(
            kind=OrderKind.ENTRY,
            idempotency_key=key,
            order_id=order_id,
            quantity=float(quantity),
            amount=float(order_amount),
            submitted_ms=int(now_ms),
        )
        bot.updated_ms = int(now_ms)
        return entry

    def _pending_entry(self, bot: BotInstance) -> BotEntry:
        for e in reversed(bot.entries):
            if e.status == EntryStatus.PENDING and e.cycle_number == bot.cycle_number:
                return e
        raise InvalidTransition(bot.id, bot.status.value, "settle entry without pending entry")

    def entry_filled(
        self, bot: BotInstance, *, fill_price: float, fill_quantity: float, now_ms: int
    ) -> BotEntry:
        """Entry fills never touch status."""
        if bot.pending_order is None or bot.pending_order.kind != OrderKind.ENTRY:
            raise InvalidTransition(bot.id, bot.status.value, "entry_filled")
        entry = self._pending_entry(bot)
        entry.status = EntryStatus.FILLED
        entry.price = float(fill_price)
        entry.quantity = float(fill_quantity)
        entry.filled_ms = int(now_ms)

        bot.average_purchase_price, bot.held_quantity = apply_buy_fill(
            bot.average_purchase_price, bot.held_quantity, fill_price, fill_quantity
        )
        bot.last_entry_ms = int(now_ms)
        bot.tp_reached = False
        bot.pending_order = None
        bot.updated_ms = int(now_ms)
        return entry

    def entry_failed(self, bot: BotInstance, *, reason: str, now_ms: int) -> BotEntry:
        if bot.pending_order is None or bot.pending_order.kind != OrderKind.ENTRY:
            raise InvalidTransition(bot.id, bot.status.value, "entry_failed")
        entry = self._pending_entry(bot)
        entry.status = EntryStatus.FAILED
        bot.pending_order = None
        bot.updated_ms = int(now_ms)
        log.warning("bot %s: entry #%s failed: %s", bot.id, entry.entry_number, reason)
        return entry

    # ---------------- EXIT ORDERS ----------------

    def exit_due(self, bot: BotInstance, now_ms: int) -> bool:
        return (
            bot.status == X
            and bot.pending_order is None
            and int(now_ms) >= int(bot.next_exit_retry_ms or 0)
        )

    def exit_submitted(
        self,
        bot: BotInstance,
        *,
        quantity: float,
        order_id: Optional[str],
        now_ms: int,
    ) -> PendingOrder:
        self._require(bot, "submit_exit")
        key = exit_key(bot)
        self._require_no_pending(bot, key)
        bot.pending_order = PendingOrder(
            kind=OrderKind.EXIT,
            idempotency_key=key,
            order_id=order_id,
            quantity=float(quantity),
            submitted_ms=int(now_ms),
        )
        bot.updated_ms = int(now_ms)
        return bot.pending_order

    def exit_filled(self, bot: BotInstance, *, fill_quantity: float, now_ms: int) -> None:
        self._require(bot, "exit_filled")
        bot.average_purchase_price, bot.held_quantity = apply_sell_fill(
            bot.average_purchase_price, bot.held_quantity, fill_quantity
        )
        bot.pending_order = None
        bot.tp_reached = False
        self._set_status(bot, C, now_ms)

    def exit_rejected(
        self, bot: BotInstance, *, reason: str, transient: bool, now_ms: int
    ) -> BotStatus:
        """
        Transient: stay exiting, count the attempt, schedule a retry.
        Permanent, or transient beyond the bound: exit_failed.
        """
        self._require(bot, "exit_rejected")
        bot.pending_order = None
        bot.exit_attempts += 1
        bot.exit_sequence += 1
        bot.exit_failure_reason = str(reason)
        bot.exit_failure_ms = int(now_ms)

        if transient and bot.exit_attempts < self.retry.max_attempts:
            bot.next_exit_retry_ms = int(now_ms) + self.retry.delay_ms(bot.exit_attempts)
            bot.updated_ms = int(now_ms)
            log.warning(
                "bot %s: exit attempt %s failed (auto-retrying): %s",
                bot.id,
                bot.exit_attempts,
                reason,
            )
            return X

        bot.next_exit_retry_ms = 0
        self._set_status(bot, F, now_ms)
        return F
