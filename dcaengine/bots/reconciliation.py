# dcaengine/bots/reconciliation.py
from __future__ import annotations

from typing import Optional, Tuple

from dcaengine.bots.models import BotInstance, ReconciledMetrics
from dcaengine.policy.exit_policy import tp_price
from dcaengine.strategy.ladder import next_entry

# quantities below this are treated as flat (exchange dust)
QTY_EPSILON = 1e-12


def apply_buy_fill(
    avg_price: float, qty: float, fill_price: float, fill_qty: float
) -> Tuple[float, float]:
    """Weighted-average cost basis after a buy. Returns (avg, qty)."""
    old_qty = max(0.0, float(qty))
    fill_qty = float(fill_qty)
    if fill_qty <= 0:
        return float(avg_price), old_qty
    new_qty = old_qty + fill_qty
    new_avg = (float(avg_price) * old_qty + float(fill_price) * fill_qty) / new_qty
    return new_avg, new_qty


def apply_sell_fill(avg_price: float, qty: float, fill_qty: float) -> Tuple[float, float]:
    """Sold units leave at the average cost, so the average is unchanged."""
    new_qty = float(qty) - max(0.0, float(fill_qty))
    if new_qty < QTY_EPSILON:
        new_qty = 0.0
    return float(avg_price), new_qty


def reconcile(
    bot: BotInstance,
    holdings: float,
    current_price: float,
    *,
    stale: bool = False,
    now_ms: int = 0,
) -> ReconciledMetrics:
    """
    Derived metrics from current holdings, not from entry history, so
    out-of-band partial sells reduce invested capital proportionally.
    """
    qty = max(0.0, float(holdings))
    if qty < QTY_EPSILON:
        qty = 0.0
    avg = float(bot.average_purchase_price)
    price = float(current_price or 0.0)

    total_invested = qty * avg
    current_value = qty * price
    pnl = current_value - total_invested
    pnl_pct = (pnl / total_invested * 100.0) if total_invested > 0 else 0.0

    next_price: Optional[float] = None
    if bot.current_entry_count < bot.config.max_entries:
        last = bot.last_fill
        step = next_entry(bot.config, bot.current_entry_count + 1, last.price if last else None)
        next_price = step.trigger_price

    return ReconciledMetrics(
        current_holdings=qty,
        average_purchase_price=avg,
        total_invested=total_invested,
        current_price=price,
        current_value=current_value,
        unrealized_pnl=pnl,
        unrealized_pnl_percent=pnl_pct,
        current_tp_price=tp_price(avg, bot.config.tp_target),
        next_entry_price=next_price,
        holdings_stale=stale,
        as_of_ms=int(now_ms),
    )


def stale_metrics(
    bot: BotInstance, current_price: Optional[float], now_ms: int
) -> ReconciledMetrics:
    """
    Fallback when holdings are unavailable: reuse the last known holdings
    (or the engine ledger) and flag staleness.
    """
    last = bot.last_metrics
    holdings = last.current_holdings if last is not None else bot.held_quantity
    price = current_price if current_price is not None else (last.current_price if last else 0.0)
    return reconcile(bot, holdings, price, stale=True, now_ms=now_ms)
