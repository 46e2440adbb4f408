# dcaengine/runner/scheduler.py
from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from dcaengine.ops.context import clear_run_id, set_run_id
from dcaengine.runner.engine import DCAEngine

log = logging.getLogger("dcaengine.scheduler")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SchedulerState:
    running: bool = False
    mode: str = "paper"
    interval_seconds: int = 300
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    last_tick_at: Optional[str] = None
    tick_count: int = 0
    last_error: Optional[str] = None
    last_result: Optional[dict] = None
    task: Optional[asyncio.Task] = None

    def as_dict(self) -> dict:
        return {
            "running": self.running,
            "mode": self.mode,
            "interval_seconds": self.interval_seconds,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "last_tick_at": self.last_tick_at,
            "tick_count": self.tick_count,
            "last_error": self.last_error,
        }


class Scheduler:
    """
    Drives engine.run_once() every interval_seconds on the event loop.
    The pass itself runs in a worker thread so the API stays responsive.
    FAIL-CLOSED: an exception escaping run_once halts the loop.
    """

    def __init__(self, engine: DCAEngine, interval_seconds: int, mode: str = "paper"):
        self.engine = engine
        self.state = SchedulerState(mode=mode, interval_seconds=int(interval_seconds))

    def is_running(self) -> bool:
        return bool(self.state.running and self.state.task and not self.state.task.done())

    async def _loop(self) -> None:
        st = self.state
        # context copies into the task; run_id rides along into every event
        if st.run_id:
            set_run_id(st.run_id)

        while st.running:
            try:
                st.last_tick_at = _utc_now_iso()
                st.last_result = await asyncio.to_thread(self.engine.run_once)
                st.tick_count += 1
                st.last_error = None
            except Exception:
                err = traceback.format_exc()
                st.last_error = err
                log.error("scheduler halted: %s", err)
                self.engine.audit.event(
                    "FATAL",
                    action="SCHEDULER_HALTED",
                    details={"error": err},
                )
                st.running = False
                break

            await asyncio.sleep(st.interval_seconds)

    async def start(self, interval_seconds: Optional[int] = None) -> bool:
        """Returns False when already running."""
        if self.is_running():
            return False

        st = self.state
        if interval_seconds:
            st.interval_seconds = int(interval_seconds)
        st.run_id = str(uuid.uuid4())
        set_run_id(st.run_id)
        self.engine.audit.start_run(st.run_id, st.mode, st.interval_seconds)

        st.running = True
        st.started_at = _utc_now_iso()
        st.last_tick_at = None
        st.tick_count = 0
        st.last_error = None
        st.task = asyncio.create_task(self._loop())
        log.info("scheduler started run_id=%s interval=%ss", st.run_id, st.interval_seconds)
        return True

    async def stop(self) -> bool:
        """Returns False when it was not running."""
        st = self.state
        if not st.running and not (st.task and not st.task.done()):
            return False

        st.running = False
        if st.task and not st.task.done():
            st.task.cancel()
            try:
                await st.task
            except asyncio.CancelledError:
                # expected when we cancel the background loop
                pass
        st.task = None

        if st.run_id:
            self.engine.audit.stop_run(st.run_id)
            log.info("scheduler stopped run_id=%s", st.run_id)
        clear_run_id()
        return True
