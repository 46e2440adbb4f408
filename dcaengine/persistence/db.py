from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/dca.db
    """

    def __init__(self, path: str = "data/dca.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _ensure_bots_schema(self, conn: sqlite3.Connection) -> None:
        cols = {row[1] for row in conn.execute("PRAGMA table_info(bots)").fetchall()}

        # databases created before exit_sequence existed
        if "exit_sequence" not in cols:
            conn.execute(
                "ALTER TABLE bots ADD COLUMN exit_sequence INTEGER NOT NULL DEFAULT 0"
            )

    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Runs (one per service start)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    stopped_at TEXT,
                    mode TEXT NOT NULL,
                    interval_seconds INTEGER NOT NULL
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    run_id TEXT,
                    tick_id TEXT,
                    bot_id TEXT,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Bots
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bots (
                    bot_id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    status TEXT NOT NULL,
                    config_json TEXT NOT NULL,
                    average_purchase_price REAL NOT NULL DEFAULT 0,
                    held_quantity REAL NOT NULL DEFAULT 0,
                    last_entry_ms INTEGER NOT NULL DEFAULT 0,
                    exit_failure_reason TEXT,
                    exit_failure_ms INTEGER NOT NULL DEFAULT 0,
                    exit_attempts INTEGER NOT NULL DEFAULT 0,
                    exit_sequence INTEGER NOT NULL DEFAULT 0,
                    next_exit_retry_ms INTEGER NOT NULL DEFAULT 0,
                    tp_reached INTEGER NOT NULL DEFAULT 0,
                    pending_order_json TEXT,
                    cycle_number INTEGER NOT NULL DEFAULT 1,
                    last_metrics_json TEXT,
                    created_ms INTEGER NOT NULL DEFAULT 0,
                    updated_ms INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )

            self._ensure_bots_schema(conn)

            # =========================
            # Bot entries (append-only once filled)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bot_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bot_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    cycle_number INTEGER NOT NULL,
                    entry_number INTEGER NOT NULL,
                    price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    order_amount REAL NOT NULL,
                    status TEXT NOT NULL,
                    order_id TEXT,
                    created_ms INTEGER NOT NULL DEFAULT 0,
                    filled_ms INTEGER NOT NULL DEFAULT 0,
                    source TEXT NOT NULL DEFAULT 'bot_execution',
                    FOREIGN KEY(bot_id) REFERENCES bots(bot_id)
                )
                """
            )

            # =========================
            # Execution log (entry/exit attempts per bot)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS executions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    tick_id TEXT,
                    bot_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    action TEXT NOT NULL,               -- entry/exit
                    price REAL NOT NULL,
                    quantity REAL NOT NULL,
                    amount REAL NOT NULL,
                    entry_number INTEGER,
                    reason TEXT,
                    tech_score REAL,
                    trend_score REAL,
                    success INTEGER NOT NULL,
                    error TEXT,
                    order_id TEXT,
                    timestamp_utc TEXT NOT NULL
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_bot ON events(bot_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_bot ON bot_entries(bot_id, seq)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_exec_bot ON executions(bot_id, id)"
            )

            conn.commit()

        finally:
            conn.close()
