from __future__ import annotations

from typing import List, Optional

from dcaengine.ops.context import get_run_id, get_tick_id
from dcaengine.persistence.db import DB, utc_now_iso


def record_execution(
    db: DB,
    *,
    bot_id: str,
    symbol: str,
    action: str,  # entry/exit
    price: float,
    quantity: float,
    amount: float,
    success: bool,
    reason: str = "",
    entry_number: Optional[int] = None,
    tech_score: Optional[float] = None,
    trend_score: Optional[float] = None,
    error: Optional[str] = None,
    order_id: Optional[str] = None,
) -> None:
    with db.connect() as conn:
        conn.execute(
            """
            INSERT INTO executions(run_id, tick_id, bot_id, symbol, action, price, quantity, amount,
                                   entry_number, reason, tech_score, trend_score, success, error,
                                   order_id, timestamp_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                get_run_id(),
                get_tick_id(),
                bot_id,
                symbol,
                action,
                float(price),
                float(quantity),
                float(amount),
                int(entry_number) if entry_number is not None else None,
                reason,
                float(tech_score) if tech_score is not None else None,
                float(trend_score) if trend_score is not None else None,
                1 if success else 0,
                error,
                order_id,
                utc_now_iso(),
            ),
        )


def list_executions(db: DB, bot_id: str, limit: int = 50) -> List[dict]:
    """Newest first."""
    with db.connect() as conn:
        rows = conn.execute(
            "SELECT * FROM executions WHERE bot_id = ? ORDER BY id DESC LIMIT ?",
            (bot_id, int(limit)),
        ).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["success"] = bool(d["success"])
        out.append(d)
    return out
