# dcaengine/policy/exit_policy.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from dcaengine.bots.models import BotStatus, MarketContext

WAITING_FOR_EXIT = "waiting_for_exit"


@dataclass(frozen=True)
class ExitPolicy:
    """
    bearish_mode:
      "both"   -> tech < threshold AND trend < threshold
      "either" -> tech < threshold OR trend < threshold
    retrace_buffer_pct: band above TP that counts as a retrace once TP was seen.
    """

    trend_threshold: float = 50.0
    bearish_mode: str = "both"
    retrace_buffer_pct: float = 1.0

    def is_bearish(self, ctx: MarketContext) -> bool:
        tech_low = ctx.tech_score < self.trend_threshold
        trend_low = ctx.trend_score < self.trend_threshold
        if self.bearish_mode == "either":
            return tech_low or trend_low
        return tech_low and trend_low


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    reason: str
    tp_price: Optional[float]
    tp_reached: bool


def tp_price(average_price: float, tp_target: float) -> Optional[float]:
    if average_price <= 0:
        return None
    return float(average_price) * (1.0 + float(tp_target) / 100.0)


def evaluate_exit(
    average_price: float,
    held_quantity: float,
    tp_target: float,
    ctx: MarketContext,
    tp_reached: bool,
    policy: ExitPolicy = ExitPolicy(),
) -> ExitDecision:
    """
    Hold while bullish above TP; exit on trend reversal above TP, or when
    price retraces back to TP after having exceeded it.
    """
    tp = tp_price(average_price, tp_target)
    if tp is None or held_quantity <= 0:
        return ExitDecision(False, "no position", tp, False)

    price = float(ctx.price)

    if price >= tp:
        if policy.is_bearish(ctx):
            return ExitDecision(True, "trend reversal above TP", tp, True)
        if tp_reached and price <= tp * (1.0 + policy.retrace_buffer_pct / 100.0):
            return ExitDecision(True, "price retraced to TP", tp, True)
        return ExitDecision(False, "above TP, trend still bullish", tp, True)

    if tp_reached:
        return ExitDecision(True, "price fell back through TP", tp, True)

    return ExitDecision(False, "below TP", tp, False)


def display_status(
    status: BotStatus, current_price: Optional[float], current_tp_price: Optional[float]
) -> str:
    """Projection only; never stored."""
    if (
        status == BotStatus.ACTIVE
        and current_tp_price
        and current_price is not None
        and current_price >= current_tp_price
    ):
        return WAITING_FOR_EXIT
    return status.value
