from __future__ import annotations

import contextvars
import logging
import threading
import time
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from dcaengine.bots.errors import BotNotFound, EngineError, InvalidBotConfig
from dcaengine.bots.models import (
    BotConfig,
    BotInstance,
    BotStatus,
    BotView,
    MarketContext,
    OrderKind,
    ReconciledMetrics,
)
from dcaengine.bots.reconciliation import QTY_EPSILON, reconcile, stale_metrics
from dcaengine.bots.state_machine import (
    BotStateMachine,
    RetryPolicy,
    entry_key,
    exit_key,
)
from dcaengine.core.config import Settings, settings as default_settings
from dcaengine.execution.errors import ExecutionFailure, failure_from_reason
from dcaengine.execution.executor import (
    OrderExecutor,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
)
from dcaengine.market.providers import (
    HoldingsSource,
    HoldingsUnavailable,
    MarketContextProvider,
    MarketDataUnavailable,
)
from dcaengine.ops.context import clear_tick_id, set_tick_id
from dcaengine.persistence.audit import Audit
from dcaengine.persistence.db import DB
from dcaengine.persistence.executions import list_executions, record_execution
from dcaengine.persistence.state_store import StateStore
from dcaengine.policy.entry_gate import GateDecision, evaluate_entry
from dcaengine.policy.exit_policy import (
    WAITING_FOR_EXIT,
    ExitPolicy,
    display_status,
    evaluate_exit,
)

log = logging.getLogger("dcaengine.engine")

# statuses evaluated on every tick
_TICK_STATUSES = frozenset({BotStatus.ACTIVE, BotStatus.EXITING})


def _now_ms() -> int:
    return int(time.time() * 1000)


class DCAEngine:
    """
    Owns every bot. One evaluation per bot per tick; evaluations of
    different bots run concurrently, evaluations of the same bot are
    serialized by a per-bot lock.
    """

    def __init__(
        self,
        market: MarketContextProvider,
        executor: OrderExecutor,
        holdings: Optional[HoldingsSource] = None,
        *,
        db: Optional[DB] = None,
        cfg: Optional[Settings] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.cfg = cfg or default_settings
        self.market = market
        self.executor = executor
        # None -> the engine ledger is the holdings source (paper mode)
        self.holdings = holdings
        self.clock = clock

        # ---- Persistence + audit ----
        self.db = db or DB(self.cfg.DB_PATH)
        self.audit = Audit(self.db, self.cfg.AUDIT_JSONL_PATH)
        self.store = StateStore(self.db)

        self.machine = BotStateMachine(
            RetryPolicy(
                max_attempts=self.cfg.EXIT_MAX_TRANSIENT_ATTEMPTS,
                initial_seconds=self.cfg.EXIT_RETRY_INITIAL_SECONDS,
                max_seconds=self.cfg.EXIT_RETRY_MAX_SECONDS,
                backoff=self.cfg.EXIT_RETRY_BACKOFF,
            )
        )
        self.exit_policy = ExitPolicy(
            trend_threshold=self.cfg.TREND_THRESHOLD,
            bearish_mode=self.cfg.EXIT_BEARISH_MODE,
            retrace_buffer_pct=self.cfg.EXIT_RETRACE_BUFFER_PCT,
        )

        # --- Execution locks (anti-overlap) ---
        self._cycle_lock = threading.Lock()
        self._bots_lock = threading.Lock()
        self._bot_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)

        # Restore bots
        self.bots: Dict[str, BotInstance] = self.store.load_bots()
        if self.bots:
            log.info("restored %d bots", len(self.bots))

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------
    @contextmanager
    def cycle_guard(self, timeout_s: float = 0.0):
        """
        Prevent overlapping run_once passes.
        """
        acquired = self._cycle_lock.acquire(timeout=timeout_s) if timeout_s > 0 else self._cycle_lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._cycle_lock.release()

    @contextmanager
    def bot_guard(self, bot_id: str, timeout_s: float = 0.0):
        """
        Mutual exclusion per bot across scheduled ticks, manual triggers
        and operator actions.
        """
        with self._bots_lock:
            lock = self._bot_locks[bot_id]
        acquired = lock.acquire(timeout=timeout_s) if timeout_s > 0 else lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            with self._bots_lock:
                # deleted bots drop their lock
                if bot_id not in self.bots:
                    self._bot_locks.pop(bot_id, None)

    def _get(self, bot_id: str) -> BotInstance:
        with self._bots_lock:
            bot = self.bots.get(bot_id)
        if bot is None:
            raise BotNotFound(bot_id)
        return bot

    @contextmanager
    def _operate(self, bot_id: str, action: str):
        """Operator action on one bot: waits for any in-flight tick."""
        self._get(bot_id)
        with self.bot_guard(bot_id, timeout_s=self.cfg.BOT_LOCK_TIMEOUT_SECONDS) as ok:
            if not ok:
                raise EngineError(f"bot {bot_id} is busy; {action} not applied")
            bot = self._get(bot_id)
            yield bot
            self._persist(bot)

    def _persist(self, bot: BotInstance) -> None:
        try:
            self.store.save_bot(bot)
        except Exception as e:
            # Don't kill the tick because persistence failed; surface it
            log.exception("save bot %s failed", bot.id)
            self.audit.event(
                "ERROR",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="SAVE_BOT_FAILED",
                details={"error": f"{type(e).__name__}: {e}"},
            )

    # ------------------------------------------------------------------
    # Operator interface
    # ------------------------------------------------------------------
    def create_bot(self, symbol: str, config: Union[BotConfig, Dict[str, Any]]) -> BotInstance:
        cfg = config if isinstance(config, BotConfig) else BotConfig.build(config)
        sym = (symbol or "").strip().upper()
        if not sym:
            raise EngineError("symbol is required")

        now = self.clock()
        bot = BotInstance(
            id=f"dca_{sym.lower()}_{uuid.uuid4().hex[:8]}",
            symbol=sym,
            config=cfg,
            status=BotStatus.ACTIVE,
            created_ms=now,
            updated_ms=now,
        )
        with self._bots_lock:
            self.bots[bot.id] = bot
        self._persist(bot)
        self.audit.event(
            "BOT",
            bot_id=bot.id,
            symbol=sym,
            action="CREATED",
            details={"config": cfg.model_dump()},
        )
        log.info("created bot %s for %s", bot.id, sym)
        return bot

    def create_bots(
        self, symbols: Iterable[str], config: Union[BotConfig, Dict[str, Any]]
    ) -> List[BotInstance]:
        cfg = config if isinstance(config, BotConfig) else BotConfig.build(config)
        return [self.create_bot(s, cfg) for s in symbols if (s or "").strip()]

    def pause_bot(self, bot_id: str) -> BotInstance:
        with self._operate(bot_id, "pause") as bot:
            self.machine.pause(bot, self.clock())
        self.audit.event("BOT", bot_id=bot_id, symbol=bot.symbol, action="PAUSED")
        return bot

    def resume_bot(self, bot_id: str) -> BotInstance:
        with self._operate(bot_id, "resume") as bot:
            prev = bot.status
            self.machine.resume(bot, self.clock())
        self.audit.event(
            "BOT",
            bot_id=bot_id,
            symbol=bot.symbol,
            action="RESUMED",
            details={"from": prev.value, "cycle_number": bot.cycle_number},
        )
        return bot

    def stop_bot(self, bot_id: str) -> BotInstance:
        with self._operate(bot_id, "stop") as bot:
            self.machine.stop(bot, self.clock())
        self.audit.event("BOT", bot_id=bot_id, symbol=bot.symbol, action="STOPPED")
        return bot

    def delete_bot(self, bot_id: str) -> None:
        bot = self._get(bot_id)
        with self.bot_guard(bot_id, timeout_s=self.cfg.BOT_LOCK_TIMEOUT_SECONDS) as ok:
            if not ok:
                raise EngineError(f"bot {bot_id} is busy; delete not applied")
            with self._bots_lock:
                self.bots.pop(bot_id, None)
            self.store.delete_bot(bot_id)
        self.audit.event(
            "BOT",
            bot_id=bot_id,
            symbol=bot.symbol,
            action="DELETED",
            details={"status": bot.status.value},
        )

    def update_config(self, bot_id: str, partial: Dict[str, Any]) -> BotInstance:
        with self._operate(bot_id, "update_config") as bot:
            merged = bot.config.merged(partial)
            committed = bot.current_entry_count
            if bot.pending_order is not None and bot.pending_order.kind == OrderKind.ENTRY:
                committed += 1
            if merged.max_entries < committed:
                raise InvalidBotConfig(
                    f"re_entry_count={merged.re_entry_count} allows {merged.max_entries} entries; "
                    f"bot {bot_id} already has {committed} this cycle"
                )
            bot.config = merged
            bot.updated_ms = self.clock()
        self.audit.event(
            "BOT",
            bot_id=bot_id,
            symbol=bot.symbol,
            action="CONFIG_UPDATED",
            details={"changes": partial},
        )
        return bot

    def manual_exit(self, bot_id: str) -> BotInstance:
        """Bypasses the exit evaluator; sells immediately."""
        with self._operate(bot_id, "manual_exit") as bot:
            now = self.clock()
            self.machine.manual_exit(bot, now)
            self.audit.event("EXIT", bot_id=bot_id, symbol=bot.symbol, action="MANUAL_EXIT")
            ctx = self._market_or_none(bot)
            self._reconcile(bot, ctx, now)
            self._drive_exit(bot, ctx, now, reason="Manual exit")
        return bot

    def retry_exit(self, bot_id: str) -> BotInstance:
        with self._operate(bot_id, "retry_exit") as bot:
            now = self.clock()
            prior_attempts = bot.exit_attempts
            self.machine.retry_exit(bot, now)
            self.audit.event(
                "EXIT",
                bot_id=bot_id,
                symbol=bot.symbol,
                action="RETRY_EXIT",
                details={"prior_attempts": prior_attempts},
            )
            ctx = self._market_or_none(bot)
            self._reconcile(bot, ctx, now)
            self._drive_exit(bot, ctx, now, reason="Operator retry")
        return bot

    def get_executions(self, bot_id: str, limit: int = 50) -> List[dict]:
        self._get(bot_id)
        return list_executions(self.db, bot_id, limit)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def _market_or_none(self, bot: BotInstance) -> Optional[MarketContext]:
        try:
            return self.market.get_market_context(bot.symbol)
        except MarketDataUnavailable as e:
            log.info("bot %s: %s", bot.id, e)
            return None

    def get_bot_view(self, bot_id: str) -> BotView:
        bot = self._get(bot_id)
        ctx = self._market_or_none(bot)
        now = self.clock()

        metrics = bot.last_metrics
        if metrics is None or ctx is not None:
            holdings = metrics.current_holdings if metrics else bot.held_quantity
            price = ctx.price if ctx else (metrics.current_price if metrics else 0.0)
            metrics = reconcile(
                bot,
                holdings,
                price,
                stale=bool(metrics.holdings_stale) if metrics else False,
                now_ms=now,
            )

        shown = display_status(bot.status, metrics.current_price, metrics.current_tp_price)
        return BotView(
            bot=bot,
            metrics=metrics,
            display_status=shown,
            next_action=self._next_action(bot, ctx, shown, now),
        )

    def list_bots(self) -> List[BotView]:
        with self._bots_lock:
            ids = list(self.bots.keys())
        views = []
        for bot_id in ids:
            try:
                views.append(self.get_bot_view(bot_id))
            except BotNotFound:
                continue
        return views

    def _next_action(
        self, bot: BotInstance, ctx: Optional[MarketContext], shown: str, now: int
    ) -> str:
        if bot.status == BotStatus.EXITING:
            if bot.exit_failure_reason:
                return f"Auto-retrying exit (attempt {bot.exit_attempts}): {bot.exit_failure_reason}"
            return "Exit order in progress"
        if bot.status == BotStatus.EXIT_FAILED:
            return f"Exit failed: {bot.exit_failure_reason} (manual retry required)"
        if bot.status == BotStatus.COMPLETED:
            return "Cycle completed"
        if bot.status == BotStatus.STOPPED:
            return "Bot is stopped"
        if shown == WAITING_FOR_EXIT:
            return "Holding above take-profit while trend is bullish"
        return evaluate_entry(
            bot, ctx, now, trend_threshold=self.cfg.TREND_THRESHOLD
        ).message

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def run_once(self, wait: bool = False) -> Dict[str, Any]:
        """
        One evaluation pass over every active/exiting bot (and any bot with
        an outstanding order). wait=True blocks until a running pass ends.
        """
        timeout = self.cfg.BOT_LOCK_TIMEOUT_SECONDS if wait else 0.0
        with self.cycle_guard(timeout_s=timeout) as ok:
            if not ok:
                return {"status": "skipped", "reason": "cycle_in_progress"}

            tick_id = str(uuid.uuid4())
            set_tick_id(tick_id)
            try:
                with self._bots_lock:
                    due = [
                        b.id
                        for b in self.bots.values()
                        if b.status in _TICK_STATUSES or b.pending_order is not None
                    ]

                self.audit.event("TICK", action="TICK_START", details={"bots": len(due)})

                results: List[Dict[str, Any]] = []
                if due:
                    workers = max(1, min(self.cfg.MAX_CONCURRENT_BOTS, len(due)))
                    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dca-bot") as pool:
                        futures = [
                            pool.submit(
                                contextvars.copy_context().run,
                                self.step_bot,
                                bot_id,
                                wait,
                            )
                            for bot_id in due
                        ]
                        results = [f.result() for f in futures]

                self.audit.event("TICK", action="TICK_END", details={"bots": len(due)})
                return {"status": "ok", "tick_id": tick_id, "bots": len(due), "results": results}
            finally:
                clear_tick_id()

    def trigger_now(self, bot_id: Optional[str] = None) -> Dict[str, Any]:
        """Out-of-band pass; waits for an in-flight tick instead of racing it."""
        if bot_id is None:
            return self.run_once(wait=True)
        self._get(bot_id)
        tick_id = str(uuid.uuid4())
        set_tick_id(tick_id)
        try:
            return self.step_bot(bot_id, wait=True)
        finally:
            clear_tick_id()

    def step_bot(self, bot_id: str, wait: bool = False) -> Dict[str, Any]:
        timeout = self.cfg.BOT_LOCK_TIMEOUT_SECONDS if wait else 0.0
        with self.bot_guard(bot_id, timeout_s=timeout) as ok:
            if not ok:
                self.audit.event(
                    "EXEC_LOCK",
                    bot_id=bot_id,
                    action="SKIP_LOCK_BUSY",
                    details={"reason": "BOT_LOCK_BUSY"},
                )
                return {"bot_id": bot_id, "action": "SKIPPED", "reason": "bot_lock_busy"}

            with self._bots_lock:
                bot = self.bots.get(bot_id)
            if bot is None:
                return {"bot_id": bot_id, "action": "SKIPPED", "reason": "deleted"}

            try:
                payload = self._evaluate(bot)
            except Exception as e:
                # one bot's failure never aborts the others
                log.exception("bot %s: evaluation failed", bot_id)
                self.audit.event(
                    "ERROR",
                    bot_id=bot_id,
                    symbol=bot.symbol,
                    action="EVALUATION_FAILED",
                    details={"error": f"{type(e).__name__}: {e}"},
                )
                payload = {"bot_id": bot_id, "action": "ERROR", "error": f"{type(e).__name__}: {e}"}

            self._persist(bot)
            return payload

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------
    def _evaluate(self, bot: BotInstance) -> Dict[str, Any]:
        now = self.clock()
        payload: Dict[str, Any] = {"bot_id": bot.id, "symbol": bot.symbol}

        # 1) settle the outstanding order, if any
        if bot.pending_order is not None:
            settled = self._settle_pending(bot, now)
            if settled:
                payload["settled"] = settled

        if bot.status not in _TICK_STATUSES:
            payload.update(action="NOOP", reason=f"status={bot.status.value}")
            return payload

        # 2) market context
        ctx: Optional[MarketContext]
        try:
            ctx = self.market.get_market_context(bot.symbol)
        except MarketDataUnavailable as e:
            ctx = None
            self.audit.event(
                "WARN",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="MARKET_DATA_UNAVAILABLE",
                details={"error": str(e)},
            )

        # 3) reconcile against holdings
        metrics = self._reconcile(bot, ctx, now)
        payload["metrics"] = {
            "holdings": metrics.current_holdings,
            "total_invested": metrics.total_invested,
            "unrealized_pnl": metrics.unrealized_pnl,
            "holdings_stale": metrics.holdings_stale,
        }

        # 4) exiting bots only drive their exit order
        if bot.status == BotStatus.EXITING:
            payload.update(self._drive_exit(bot, ctx, now, reason="Exit in progress"))
            return payload

        if ctx is None or ctx.stale:
            payload.update(action="HOLD", reason="no data")
            return payload

        # 5) exit evaluator before entry gate
        decision = evaluate_exit(
            bot.average_purchase_price,
            metrics.current_holdings,
            bot.config.tp_target,
            ctx,
            bot.tp_reached,
            self.exit_policy,
        )
        bot.tp_reached = decision.tp_reached
        if decision.should_exit:
            self.machine.trigger_exit(bot, now)
            self.audit.event(
                "EXIT",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="EXIT_TRIGGERED",
                details={
                    "reason": decision.reason,
                    "price": ctx.price,
                    "tp_price": decision.tp_price,
                    "tech_score": ctx.tech_score,
                    "trend_score": ctx.trend_score,
                },
            )
            payload.update(self._drive_exit(bot, ctx, now, reason=decision.reason))
            return payload

        # 6) entry gate
        gate = evaluate_entry(bot, ctx, now, trend_threshold=self.cfg.TREND_THRESHOLD)
        if not gate.ready:
            payload.update(action="HOLD", reason=gate.reason, message=gate.message)
            return payload

        payload.update(self._submit_entry(bot, gate, ctx, now))
        return payload

    def _reconcile(
        self, bot: BotInstance, ctx: Optional[MarketContext], now: int
    ) -> ReconciledMetrics:
        price = ctx.price if ctx is not None else None
        if self.holdings is None:
            metrics = reconcile(
                bot,
                bot.held_quantity,
                price if price is not None else (bot.last_metrics.current_price if bot.last_metrics else 0.0),
                now_ms=now,
            )
        else:
            try:
                qty = self.holdings.get_holdings(bot.symbol)
            except HoldingsUnavailable as e:
                self.audit.event(
                    "WARN",
                    bot_id=bot.id,
                    symbol=bot.symbol,
                    action="HOLDINGS_UNAVAILABLE",
                    details={"error": str(e)},
                )
                metrics = stale_metrics(bot, price, now)
            else:
                # external truth: reflects manual / out-of-band sells
                bot.held_quantity = qty
                metrics = reconcile(
                    bot,
                    qty,
                    price if price is not None else (bot.last_metrics.current_price if bot.last_metrics else 0.0),
                    now_ms=now,
                )
        bot.last_metrics = metrics
        return metrics

    def _refresh_after_fill(self, bot: BotInstance, ctx: Optional[MarketContext], now: int) -> None:
        invalidate = getattr(self.holdings, "invalidate", None)
        if callable(invalidate):
            invalidate(bot.symbol)
        price = ctx.price if ctx is not None else (
            bot.last_metrics.current_price if bot.last_metrics else 0.0
        )
        # ledger is authoritative right after our own fill
        bot.last_metrics = reconcile(bot, bot.held_quantity, price, now_ms=now)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------
    def _submit_entry(
        self, bot: BotInstance, gate: GateDecision, ctx: MarketContext, now: int
    ) -> Dict[str, Any]:
        n = gate.entry_number
        amount = gate.order_amount
        est_qty = amount / ctx.price if ctx.price > 0 else 0.0
        req = OrderRequest(
            bot_id=bot.id,
            symbol=bot.symbol,
            side=OrderSide.BUY,
            kind=OrderKind.ENTRY.value,
            idempotency_key=entry_key(bot, n),
            amount=amount,
            reference_price=ctx.price,
        )

        try:
            res = self.executor.submit_order(req)
        except ExecutionFailure as e:
            # nothing registered as pending; next tick resubmits the same key
            self._log_execution(bot, "entry", ctx, 0.0, amount, False, "Entry execution failed", n, error=e.reason)
            self.audit.event(
                "ORDER",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="ENTRY_SUBMIT_FAILED",
                details={"entry_number": n, "error": e.reason, "transient": e.transient},
            )
            return {"action": "ENTRY_FAILED", "entry_number": n, "error": e.reason}

        self.machine.entry_submitted(
            bot,
            entry_number=n,
            price=ctx.price,
            quantity=est_qty,
            order_amount=amount,
            order_id=res.order_id,
            now_ms=now,
        )
        self.audit.event(
            "ORDER",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="ENTRY_SUBMITTED",
            details={
                "entry_number": n,
                "amount": amount,
                "price": ctx.price,
                "order_id": res.order_id,
                "key": req.idempotency_key,
            },
        )
        return self._apply_entry_result(bot, res, ctx, now)

    def _apply_entry_result(
        self, bot: BotInstance, res: OrderResult, ctx: Optional[MarketContext], now: int
    ) -> Dict[str, Any]:
        pending = bot.pending_order
        if res.status == OrderStatus.PENDING:
            return {"action": "ENTRY_PENDING", "order_id": res.order_id}

        if res.status == OrderStatus.REJECTED:
            entry = self.machine.entry_failed(bot, reason=res.reason, now_ms=now)
            self._log_execution(
                bot, "entry", ctx, 0.0, entry.order_amount, False,
                "Entry rejected", entry.entry_number, error=res.reason, order_id=res.order_id,
            )
            return {"action": "ENTRY_REJECTED", "entry_number": entry.entry_number, "reason": res.reason}

        fill_price = res.fill_price or (ctx.price if ctx else 0.0)
        fill_qty = res.fill_quantity or (pending.amount / fill_price if pending and fill_price else 0.0)
        entry = self.machine.entry_filled(bot, fill_price=fill_price, fill_quantity=fill_qty, now_ms=now)
        self._refresh_after_fill(bot, ctx, now)
        self._log_execution(
            bot, "entry", ctx, fill_qty, entry.order_amount, True,
            "Entry conditions met", entry.entry_number, price=fill_price, order_id=res.order_id,
        )
        self.audit.event(
            "FILL",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="ENTRY_FILLED",
            details={
                "entry_number": entry.entry_number,
                "price": fill_price,
                "quantity": fill_qty,
                "average_purchase_price": bot.average_purchase_price,
            },
        )
        return {
            "action": "ENTRY_FILLED",
            "entry_number": entry.entry_number,
            "price": fill_price,
            "quantity": fill_qty,
        }

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------
    def _drive_exit(
        self, bot: BotInstance, ctx: Optional[MarketContext], now: int, *, reason: str
    ) -> Dict[str, Any]:
        if bot.pending_order is not None:
            return {"action": "EXIT_WAITING", "reason": "order pending"}
        if not self.machine.exit_due(bot, now):
            return {
                "action": "EXIT_BACKOFF",
                "retry_in_ms": max(0, bot.next_exit_retry_ms - now),
                "attempts": bot.exit_attempts,
            }

        held = bot.last_metrics.current_holdings if bot.last_metrics else bot.held_quantity
        qty = held * float(bot.config.exit_percentage) / 100.0
        if qty <= QTY_EPSILON:
            self.machine.exit_filled(bot, fill_quantity=0.0, now_ms=now)
            self.audit.event(
                "EXIT",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="EXIT_NOTHING_TO_SELL",
                details={"holdings": held},
            )
            return {"action": "EXIT_COMPLETED", "quantity": 0.0}

        req = OrderRequest(
            bot_id=bot.id,
            symbol=bot.symbol,
            side=OrderSide.SELL,
            kind=OrderKind.EXIT.value,
            idempotency_key=exit_key(bot),
            quantity=qty,
            reference_price=ctx.price if ctx else None,
        )

        try:
            res = self.executor.submit_order(req)
        except ExecutionFailure as e:
            status = self._exit_failure(bot, e, ctx, qty, now, reason=reason)
            return {"action": "EXIT_FAILED", "status": status.value, "error": e.reason}

        self.machine.exit_submitted(bot, quantity=qty, order_id=res.order_id, now_ms=now)
        self.audit.event(
            "ORDER",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="EXIT_SUBMITTED",
            details={
                "quantity": qty,
                "order_id": res.order_id,
                "key": req.idempotency_key,
                "reason": reason,
            },
        )
        return self._apply_exit_result(bot, res, ctx, now, reason=reason)

    def _apply_exit_result(
        self,
        bot: BotInstance,
        res: OrderResult,
        ctx: Optional[MarketContext],
        now: int,
        *,
        reason: str,
    ) -> Dict[str, Any]:
        pending = bot.pending_order
        qty = pending.quantity if pending else 0.0

        if res.status == OrderStatus.PENDING:
            return {"action": "EXIT_PENDING", "order_id": res.order_id}

        if res.status == OrderStatus.REJECTED:
            failure = failure_from_reason(
                res.reason,
                order_id=res.order_id,
                transient_markers=self.cfg.TRANSIENT_REJECTION_REASONS,
                permanent_markers=self.cfg.PERMANENT_REJECTION_REASONS,
            )
            status = self._exit_failure(bot, failure, ctx, qty, now, reason=reason)
            return {"action": "EXIT_REJECTED", "status": status.value, "reason": res.reason}

        fill_qty = res.fill_quantity or qty
        fill_price = res.fill_price or (ctx.price if ctx else 0.0)
        self.machine.exit_filled(bot, fill_quantity=fill_qty, now_ms=now)
        self._refresh_after_fill(bot, ctx, now)
        self._log_execution(
            bot, "exit", ctx, fill_qty, fill_qty * fill_price, True, reason,
            price=fill_price, order_id=res.order_id,
        )
        self.audit.event(
            "FILL",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="EXIT_FILLED",
            details={"price": fill_price, "quantity": fill_qty, "remaining": bot.held_quantity},
        )
        return {"action": "EXIT_COMPLETED", "price": fill_price, "quantity": fill_qty}

    def _exit_failure(
        self,
        bot: BotInstance,
        failure: ExecutionFailure,
        ctx: Optional[MarketContext],
        quantity: float,
        now: int,
        *,
        reason: str,
    ) -> BotStatus:
        status = self.machine.exit_rejected(
            bot, reason=failure.reason, transient=failure.transient, now_ms=now
        )
        self._log_execution(
            bot, "exit", ctx, quantity, 0.0, False, reason,
            error=failure.reason, order_id=failure.order_id,
        )
        self.audit.event(
            "ERROR" if status == BotStatus.EXIT_FAILED else "WARN",
            bot_id=bot.id,
            symbol=bot.symbol,
            action="EXIT_FAILED" if status == BotStatus.EXIT_FAILED else "EXIT_RETRY_SCHEDULED",
            details={
                "reason": failure.reason,
                "transient": failure.transient,
                "attempts": bot.exit_attempts,
                "next_retry_ms": bot.next_exit_retry_ms or None,
            },
        )
        return status

    # ------------------------------------------------------------------
    # Outstanding orders
    # ------------------------------------------------------------------
    def _settle_pending(self, bot: BotInstance, now: int) -> Optional[str]:
        pending = bot.pending_order
        if pending is None:
            return None

        if not pending.order_id:
            # executor accepted without an id: nothing to poll
            if pending.kind == OrderKind.ENTRY:
                self.machine.entry_failed(bot, reason="order id missing", now_ms=now)
            else:
                self.machine.exit_rejected(bot, reason="order id missing", transient=True, now_ms=now)
            return "DROPPED_UNTRACKED"

        try:
            res = self.executor.get_order(pending.order_id)
        except ExecutionFailure as e:
            self.audit.event(
                "WARN",
                bot_id=bot.id,
                symbol=bot.symbol,
                action="ORDER_POLL_FAILED",
                details={"order_id": pending.order_id, "error": e.reason},
            )
            return None

        if res.status == OrderStatus.PENDING:
            return None

        ctx = self._market_or_none(bot)
        if pending.kind == OrderKind.ENTRY:
            out = self._apply_entry_result(bot, res, ctx, now)
        else:
            out = self._apply_exit_result(bot, res, ctx, now, reason="Exit order settled")
        return out.get("action")

    def _log_execution(
        self,
        bot: BotInstance,
        action: str,
        ctx: Optional[MarketContext],
        quantity: float,
        amount: float,
        success: bool,
        reason: str,
        entry_number: Optional[int] = None,
        *,
        price: Optional[float] = None,
        error: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> None:
        try:
            record_execution(
                self.db,
                bot_id=bot.id,
                symbol=bot.symbol,
                action=action,
                price=price if price is not None else (ctx.price if ctx else 0.0),
                quantity=quantity,
                amount=amount,
                success=success,
                reason=reason,
                entry_number=entry_number,
                tech_score=ctx.tech_score if ctx else None,
                trend_score=ctx.trend_score if ctx else None,
                error=error,
                order_id=order_id,
            )
        except Exception as e:
            log.error("bot %s: execution log write failed: %s", bot.id, e)
