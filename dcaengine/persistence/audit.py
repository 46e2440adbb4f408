# dcaengine/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from dcaengine.ops.context import get_run_id, get_tick_id
from dcaengine.persistence.db import DB, utc_now_iso

log = logging.getLogger("dcaengine.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file for tailing.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/dca_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        # ensure logs folder + file exist
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # never crash the engine due to audit file issues
            log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    def start_run(self, run_id: str, mode: str, interval_seconds: int) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs(run_id, started_at, mode, interval_seconds) VALUES (?,?,?,?)",
                (run_id, utc_now_iso(), mode, interval_seconds),
            )

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_START",
                "run_id": run_id,
                "details": {"mode": mode, "interval_seconds": interval_seconds},
            }
        )

    def stop_run(self, run_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE runs SET stopped_at = ? WHERE run_id = ?",
                (utc_now_iso(), run_id),
            )

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_STOP",
                "run_id": run_id,
                "details": {},
            }
        )

    def event(
        self,
        event_type: str,
        *,
        bot_id: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record one event. Failures are logged, never raised: the tick loop
        must not die because the audit sink did.
        """
        run_id = get_run_id()
        tick_id = get_tick_id()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        # 1) DB (source of truth)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, run_id, tick_id, bot_id, symbol, event_type, action, details_json)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (ts, run_id, tick_id, bot_id, symbol, event_type, action, payload),
                )
        except Exception as e:
            log.error("audit db write failed (%s/%s): %s", event_type, action, e)

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "run_id": run_id,
                "tick_id": tick_id,
                "bot_id": bot_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def recent(self, bot_id: Optional[str] = None, limit: int = 100) -> list[dict]:
        sql = "SELECT * FROM events"
        params: tuple = ()
        if bot_id:
            sql += " WHERE bot_id = ?"
            params = (bot_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        params = params + (int(limit),)
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["details"] = json.loads(d.pop("details_json") or "{}")
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed: %s", e)
