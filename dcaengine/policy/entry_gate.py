# dcaengine/policy/entry_gate.py
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from dcaengine.bots.models import BotInstance, BotStatus, MarketContext
from dcaengine.strategy.ladder import next_entry


class GateCode(str, Enum):
    READY = "ready"
    PAUSED = "paused"
    MAX_ENTRIES = "max entries reached"
    ORDER_PENDING = "order pending"
    NO_DATA = "no data"
    TREND_MISALIGNED = "trend misaligned"
    WAITING_FOR_SUPPORT = "waiting for support"
    COOLDOWN = "cooldown"
    PRICE_NOT_REACHED = "price drop not reached"


@dataclass(frozen=True)
class GateDecision:
    code: GateCode
    message: str
    entry_number: int
    order_amount: float = 0.0
    next_entry_price: Optional[float] = None
    cooldown_remaining_ms: int = 0

    @property
    def ready(self) -> bool:
        return self.code == GateCode.READY

    @property
    def reason(self) -> str:
        return self.code.value


def _ms(minutes: float) -> int:
    return int(float(minutes) * 60_000)


def trend_aligned(ctx: MarketContext, threshold: float = 50.0) -> bool:
    return ctx.tech_score >= threshold and ctx.trend_score >= threshold


def evaluate_entry(
    bot: BotInstance,
    ctx: Optional[MarketContext],
    now_ms: int,
    *,
    trend_threshold: float = 50.0,
) -> GateDecision:
    """
    Entry gate. First blocking condition wins, in the order operators see
    the messages:
      status -> max entries -> pending order -> data -> trend
      -> (re-entries only) support -> cooldown -> price trigger
    Pure: no I/O, no mutation.
    """
    cfg = bot.config
    count = bot.current_entry_count
    n = count + 1

    last = bot.last_fill
    step = next_entry(cfg, n, last.price if last else None)

    def blocked(code: GateCode, message: str, **kw) -> GateDecision:
        return GateDecision(
            code=code,
            message=message,
            entry_number=n,
            next_entry_price=step.trigger_price,
            **kw,
        )

    if bot.status != BotStatus.ACTIVE:
        return blocked(GateCode.PAUSED, "Bot is paused")

    if count >= cfg.max_entries:
        return blocked(GateCode.MAX_ENTRIES, "Max entries reached")

    if bot.pending_order is not None:
        return blocked(
            GateCode.ORDER_PENDING,
            f"Waiting for {bot.pending_order.kind.value} order to settle",
        )

    if ctx is None:
        return blocked(GateCode.NO_DATA, "No market data")

    # Trend is a global gate: applies to the initial entry too
    if cfg.trend_alignment_enabled and not trend_aligned(ctx, trend_threshold):
        return blocked(GateCode.TREND_MISALIGNED, "Waiting for trend alignment")

    if count > 0:
        if cfg.support_resistance_enabled:
            if ctx.support is None or ctx.price > ctx.support:
                return blocked(GateCode.WAITING_FOR_SUPPORT, "Waiting for support level")

        if bot.last_entry_ms > 0:
            ready_at = bot.last_entry_ms + _ms(cfg.re_entry_delay)
            if ready_at > now_ms:
                remaining = ready_at - now_ms
                minutes = math.ceil(remaining / 60_000)
                return blocked(
                    GateCode.COOLDOWN,
                    f"Cooldown: {minutes}m remaining",
                    cooldown_remaining_ms=remaining,
                )

        if step.trigger_price is not None and ctx.price > step.trigger_price:
            drop_needed = (ctx.price - step.trigger_price) / ctx.price * 100.0
            return blocked(
                GateCode.PRICE_NOT_REACHED,
                f"Waiting for {drop_needed:.2f}% price drop",
            )

    return GateDecision(
        code=GateCode.READY,
        message="Ready to enter on next trigger",
        entry_number=n,
        order_amount=step.order_amount,
        next_entry_price=step.trigger_price,
    )
