# dcaengine/persistence/state_store.py

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Dict, Optional

from dcaengine.bots.models import (
    BotConfig,
    BotEntry,
    BotInstance,
    BotStatus,
    EntryStatus,
    OrderKind,
    PendingOrder,
    ReconciledMetrics,
)
from dcaengine.persistence.db import DB, utc_now_iso


def _pending_to_json(p: Optional[PendingOrder]) -> Optional[str]:
    if p is None:
        return None
    d = asdict(p)
    d["kind"] = p.kind.value
    return json.dumps(d)


def _pending_from_json(s: Optional[str]) -> Optional[PendingOrder]:
    if not s:
        return None
    d = json.loads(s)
    d["kind"] = OrderKind(d["kind"])
    return PendingOrder(**d)


def _metrics_from_json(s: Optional[str]) -> Optional[ReconciledMetrics]:
    if not s:
        return None
    return ReconciledMetrics(**json.loads(s))


class StateStore:
    def __init__(self, db: DB):
        self.db = db

    # ---------- BOTS ----------
    def load_bots(self) -> Dict[str, BotInstance]:
        """
        Returns typed BotInstance objects with their entries attached.
        """
        out: Dict[str, BotInstance] = {}

        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM bots ORDER BY created_ms").fetchall()
            entry_rows = conn.execute(
                "SELECT * FROM bot_entries ORDER BY bot_id, seq"
            ).fetchall()

        for r in rows:
            bot = BotInstance(
                id=r["bot_id"],
                symbol=(r["symbol"] or "").upper(),
                config=BotConfig.build(json.loads(r["config_json"])),
                status=BotStatus(r["status"]),
                average_purchase_price=float(r["average_purchase_price"] or 0.0),
                held_quantity=float(r["held_quantity"] or 0.0),
                last_entry_ms=int(r["last_entry_ms"] or 0),
                exit_failure_reason=r["exit_failure_reason"],
                exit_failure_ms=int(r["exit_failure_ms"] or 0),
                exit_attempts=int(r["exit_attempts"] or 0),
                exit_sequence=int(r["exit_sequence"] or 0),
                next_exit_retry_ms=int(r["next_exit_retry_ms"] or 0),
                tp_reached=bool(r["tp_reached"]),
                pending_order=_pending_from_json(r["pending_order_json"]),
                cycle_number=int(r["cycle_number"] or 1),
                created_ms=int(r["created_ms"] or 0),
                updated_ms=int(r["updated_ms"] or 0),
                last_metrics=_metrics_from_json(r["last_metrics_json"]),
            )
            out[bot.id] = bot

        for e in entry_rows:
            bot = out.get(e["bot_id"])
            if bot is None:
                continue
            bot.entries.append(
                BotEntry(
                    entry_number=int(e["entry_number"]),
                    price=float(e["price"]),
                    quantity=float(e["quantity"]),
                    order_amount=float(e["order_amount"]),
                    status=EntryStatus(e["status"]),
                    order_id=e["order_id"],
                    cycle_number=int(e["cycle_number"]),
                    created_ms=int(e["created_ms"] or 0),
                    filled_ms=int(e["filled_ms"] or 0),
                    source=e["source"] or "bot_execution",
                )
            )

        return out

    def save_bot(self, bot: BotInstance) -> None:
        """
        UPSERT bot row and rewrite its entries in the same transaction.
        """
        metrics = json.dumps(asdict(bot.last_metrics)) if bot.last_metrics else None

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO bots(
                    bot_id, symbol, status, config_json, average_purchase_price,
                    held_quantity, last_entry_ms, exit_failure_reason, exit_failure_ms,
                    exit_attempts, exit_sequence, next_exit_retry_ms, tp_reached,
                    pending_order_json, cycle_number, last_metrics_json, created_ms,
                    updated_ms, updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(bot_id) DO UPDATE SET
                    symbol=excluded.symbol,
                    status=excluded.status,
                    config_json=excluded.config_json,
                    average_purchase_price=excluded.average_purchase_price,
                    held_quantity=excluded.held_quantity,
                    last_entry_ms=excluded.last_entry_ms,
                    exit_failure_reason=excluded.exit_failure_reason,
                    exit_failure_ms=excluded.exit_failure_ms,
                    exit_attempts=excluded.exit_attempts,
                    exit_sequence=excluded.exit_sequence,
                    next_exit_retry_ms=excluded.next_exit_retry_ms,
                    tp_reached=excluded.tp_reached,
                    pending_order_json=excluded.pending_order_json,
                    cycle_number=excluded.cycle_number,
                    last_metrics_json=excluded.last_metrics_json,
                    updated_ms=excluded.updated_ms,
                    updated_at=excluded.updated_at
                """,
                (
                    bot.id,
                    bot.symbol.upper(),
                    bot.status.value,
                    bot.config.model_dump_json(),
                    float(bot.average_purchase_price),
                    float(bot.held_quantity),
                    int(bot.last_entry_ms),
                    bot.exit_failure_reason,
                    int(bot.exit_failure_ms),
                    int(bot.exit_attempts),
                    int(bot.exit_sequence),
                    int(bot.next_exit_retry_ms),
                    1 if bot.tp_reached else 0,
                    _pending_to_json(bot.pending_order),
                    int(bot.cycle_number),
                    metrics,
                    int(bot.created_ms),
                    int(bot.updated_ms),
                    utc_now_iso(),
                ),
            )

            conn.execute("DELETE FROM bot_entries WHERE bot_id = ?", (bot.id,))
            conn.executemany(
                """
                INSERT INTO bot_entries(
                    bot_id, seq, cycle_number, entry_number, price, quantity,
                    order_amount, status, order_id, created_ms, filled_ms, source
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                [
                    (
                        bot.id,
                        seq,
                        e.cycle_number,
                        e.entry_number,
                        float(e.price),
                        float(e.quantity),
                        float(e.order_amount),
                        e.status.value,
                        e.order_id,
                        int(e.created_ms),
                        int(e.filled_ms),
                        e.source,
                    )
                    for seq, e in enumerate(bot.entries)
                ],
            )

    def delete_bot(self, bot_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM bot_entries WHERE bot_id = ?", (bot_id,))
            conn.execute("DELETE FROM bots WHERE bot_id = ?", (bot_id,))
