import json
import sqlite3

from dcaengine.bots.models import (
    BotEntry,
    BotStatus,
    EntryStatus,
    OrderKind,
    PendingOrder,
    ReconciledMetrics,
)
from dcaengine.ops.context import clear_run_id, clear_tick_id, set_run_id, set_tick_id
from dcaengine.persistence.audit import Audit
from dcaengine.persistence.db import DB
from dcaengine.persistence.executions import list_executions, record_execution
from dcaengine.persistence.state_store import StateStore

from conftest import make_bot, make_config


def test_bot_roundtrip(tmp_path):
    db = DB(str(tmp_path / "s.db"))
    store = StateStore(db)

    bot = make_bot(
        make_config(re_entry_delay=5, trend_alignment_enabled=True),
        status=BotStatus.EXITING,
        average_purchase_price=97.5,
        held_quantity=2.0,
        exit_attempts=2,
        exit_sequence=2,
        exit_failure_reason="Rate limit exceeded",
        next_exit_retry_ms=123,
        cycle_number=3,
        tp_reached=True,
        pending_order=PendingOrder(OrderKind.EXIT, "bot-1:c3:exit:3", "x9", quantity=2.0),
        last_metrics=ReconciledMetrics(current_holdings=2.0, holdings_stale=True),
        entries=[
            BotEntry(1, 100.0, 1.0, 100.0, EntryStatus.FILLED, "o1", cycle_number=3),
            BotEntry(2, 95.0, 1.0, 95.0, EntryStatus.FILLED, "o2", cycle_number=3),
        ],
    )
    store.save_bot(bot)
    # second save rewrites entries instead of duplicating them
    store.save_bot(bot)

    loaded = store.load_bots()["bot-1"]
    assert loaded == bot


def test_delete_bot_removes_entries(tmp_path):
    db = DB(str(tmp_path / "s.db"))
    store = StateStore(db)
    store.save_bot(make_bot(entries=[BotEntry(1, 1.0, 1.0, 1.0, EntryStatus.FILLED)]))
    store.delete_bot("bot-1")

    assert store.load_bots() == {}
    with db.connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM bot_entries").fetchone()[0] == 0


def test_audit_writes_db_and_jsonl_with_context(tmp_path):
    db = DB(str(tmp_path / "a.db"))
    path = tmp_path / "logs" / "audit.jsonl"
    audit = Audit(db, str(path))

    set_run_id("run-1")
    set_tick_id("tick-1")
    try:
        audit.event("ORDER", bot_id="b1", symbol="BTCUSD", action="ENTRY_SUBMITTED", details={"n": 1})
    finally:
        clear_tick_id()
        clear_run_id()

    rows = audit.recent("b1")
    assert rows[0]["run_id"] == "run-1"
    assert rows[0]["tick_id"] == "tick-1"
    assert rows[0]["details"] == {"n": 1}

    line = json.loads(path.read_text(encoding="utf-8").strip().splitlines()[-1])
    assert line["action"] == "ENTRY_SUBMITTED"
    assert line["bot_id"] == "b1"


def test_executions_newest_first(tmp_path):
    db = DB(str(tmp_path / "e.db"))
    for n in (1, 2, 3):
        record_execution(
            db, bot_id="b1", symbol="BTCUSD", action="entry", price=100.0 - n,
            quantity=1.0, amount=100.0, success=True, entry_number=n,
        )
    record_execution(db, bot_id="b2", symbol="ETHUSD", action="exit", price=1.0, quantity=1.0, amount=1.0, success=False)

    rows = list_executions(db, "b1", limit=2)
    assert [r["entry_number"] for r in rows] == [3, 2]
    assert rows[0]["success"] is True


def test_old_bots_table_gains_exit_sequence(tmp_path):
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE bots (bot_id TEXT PRIMARY KEY, symbol TEXT NOT NULL)")
    conn.commit()
    conn.close()

    db = DB(path)
    with db.connect() as c:
        cols = {row["name"] for row in c.execute("PRAGMA table_info(bots)").fetchall()}
    assert "exit_sequence" in cols
