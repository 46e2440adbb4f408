import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from dcaengine.bots.errors import (
    BotNotFound,
    EngineError,
    InvalidBotConfig,
    InvalidTransition,
    OrderAlreadyPending,
)
from dcaengine.core.config import Settings, settings
from dcaengine.exchange.backend.client import BackendClient
from dcaengine.execution.executor import BackendOrderExecutor, PaperExecutor
from dcaengine.market.cache import CachedHoldingsSource, CachedMarketProvider
from dcaengine.market.providers import BackendHoldingsSource, BackendMarketProvider
from dcaengine.persistence.db import DB
from dcaengine.runner.engine import DCAEngine
from dcaengine.runner.scheduler import Scheduler
from dcaengine.strategy.ladder import ladder_plan

log = logging.getLogger("dcaengine.api")

app = FastAPI(title="DCA Bot Engine")

engine_instance: Optional[DCAEngine] = None
scheduler_instance: Optional[Scheduler] = None

SENSITIVE_KEYS = {
    "BACKEND_API_KEY",
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Wiring
# =========================
def build_engine(cfg: Settings = settings) -> DCAEngine:
    """
    paper: backend market data, simulated fills, engine ledger as holdings.
    live:  backend market data, holdings and order queue.
    """
    client = BackendClient(
        base_url=cfg.BACKEND_BASE_URL,
        api_key=cfg.BACKEND_API_KEY,
        timeout=cfg.BACKEND_TIMEOUT_SECONDS,
    )
    market = CachedMarketProvider(
        BackendMarketProvider(client),
        ttl_seconds=cfg.MARKET_CACHE_TTL_SECONDS,
        max_stale_seconds=cfg.MARKET_MAX_STALE_SECONDS,
    )

    if cfg.EXECUTION_MODE == "live":
        holdings = CachedHoldingsSource(
            BackendHoldingsSource(client), ttl_seconds=cfg.HOLDINGS_CACHE_TTL_SECONDS
        )
        executor = BackendOrderExecutor(client)
    else:
        holdings = None
        executor = PaperExecutor(market)

    return DCAEngine(market, executor, holdings, db=DB(cfg.DB_PATH), cfg=cfg)


def get_engine() -> DCAEngine:
    global engine_instance
    if engine_instance is None:
        engine_instance = build_engine(settings)
    return engine_instance


def get_scheduler() -> Scheduler:
    global scheduler_instance
    if scheduler_instance is None:
        scheduler_instance = Scheduler(
            get_engine(), settings.TICK_INTERVAL_SECONDS, mode=settings.EXECUTION_MODE
        )
    return scheduler_instance


# =========================
# Error mapping
# =========================
def _error(status: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


@app.exception_handler(BotNotFound)
async def _bot_not_found(request, exc: BotNotFound):
    return _error(404, exc)


@app.exception_handler(InvalidBotConfig)
async def _invalid_config(request, exc: InvalidBotConfig):
    return _error(422, exc)


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request, exc: InvalidTransition):
    return _error(409, exc)


@app.exception_handler(OrderAlreadyPending)
async def _order_pending(request, exc: OrderAlreadyPending):
    return _error(409, exc)


@app.exception_handler(EngineError)
async def _engine_error(request, exc: EngineError):
    return _error(409, exc)


# =========================
# Lifecycle
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error(str(e))
        raise


@app.on_event("startup")
async def _startup_scheduler():
    if settings.AUTOSTART_SCHEDULER:
        await get_scheduler().start()


@app.on_event("shutdown")
async def _shutdown_scheduler():
    if scheduler_instance is not None:
        await scheduler_instance.stop()


# =========================
# Request bodies
# =========================
class CreateBotsRequest(BaseModel):
    symbols: List[str] = Field(min_length=1)
    config: Dict[str, Any]


# =========================
# Bots
# =========================
@app.get("/")
def root():
    return {"service": "dca-engine", "mode": settings.EXECUTION_MODE}


@app.get("/dca-bots")
def list_bots():
    return {"bots": [v.as_dict() for v in get_engine().list_bots()]}


@app.post("/dca-bots", status_code=201)
def create_bots(req: CreateBotsRequest):
    engine = get_engine()
    bots = engine.create_bots(req.symbols, req.config)
    return {"bots": [engine.get_bot_view(b.id).as_dict() for b in bots]}


@app.get("/dca-bots/{bot_id}")
def get_bot(bot_id: str):
    return get_engine().get_bot_view(bot_id).as_dict()


@app.delete("/dca-bots/{bot_id}")
def delete_bot(bot_id: str):
    get_engine().delete_bot(bot_id)
    return {"status": "deleted", "id": bot_id}


@app.patch("/dca-bots/{bot_id}/config")
def update_bot_config(bot_id: str, partial: Dict[str, Any] = Body(...)):
    engine = get_engine()
    engine.update_config(bot_id, partial)
    return engine.get_bot_view(bot_id).as_dict()


@app.get("/dca-bots/{bot_id}/ladder")
def bot_ladder(bot_id: str, initial_price: Optional[float] = Query(None, gt=0)):
    """Planned ladder from the first fill (or a hypothetical initial price)."""
    bot = get_engine().get_bot_view(bot_id).bot
    first = next((e for e in bot.filled_entries if e.entry_number == 1), None)
    price = initial_price or (first.price if first else None)
    if price is None:
        return {"id": bot_id, "steps": []}
    return {
        "id": bot_id,
        "initial_price": price,
        "steps": [
            {
                "entry_number": s.entry_number,
                "drop_percent": s.drop_percent,
                "trigger_price": s.trigger_price,
                "order_amount": s.order_amount,
            }
            for s in ladder_plan(bot.config, price)
        ],
    }


def _bot_action(bot_id: str, fn) -> dict:
    engine = get_engine()
    fn(bot_id)
    return engine.get_bot_view(bot_id).as_dict()


@app.post("/dca-bots/{bot_id}/pause")
def pause_bot(bot_id: str):
    return _bot_action(bot_id, get_engine().pause_bot)


@app.post("/dca-bots/{bot_id}/resume")
def resume_bot(bot_id: str):
    return _bot_action(bot_id, get_engine().resume_bot)


@app.post("/dca-bots/{bot_id}/stop")
def stop_bot(bot_id: str):
    return _bot_action(bot_id, get_engine().stop_bot)


@app.post("/dca-bots/{bot_id}/exit")
def exit_bot(bot_id: str):
    return _bot_action(bot_id, get_engine().manual_exit)


@app.post("/dca-bots/{bot_id}/retry-exit")
def retry_exit(bot_id: str):
    return _bot_action(bot_id, get_engine().retry_exit)


@app.post("/dca-bots/{bot_id}/trigger")
def trigger_bot(bot_id: str):
    engine = get_engine()
    result = engine.trigger_now(bot_id)
    return {"result": result, "bot": engine.get_bot_view(bot_id).as_dict()}


@app.get("/dca-bots/{bot_id}/executions")
def bot_executions(bot_id: str, limit: int = Query(50, ge=1, le=500)):
    return {"id": bot_id, "executions": get_engine().get_executions(bot_id, limit)}


# =========================
# Scheduler
# =========================
@app.post("/runner/start")
async def runner_start(interval_seconds: Optional[int] = Query(None, ge=1)):
    sched = get_scheduler()
    started = await sched.start(interval_seconds)
    return {"status": "started" if started else "already_running", **sched.state.as_dict()}


@app.post("/runner/stop")
async def runner_stop():
    sched = get_scheduler()
    stopped = await sched.stop()
    return {"status": "stopped" if stopped else "not_running", **sched.state.as_dict()}


@app.post("/runner/trigger")
def runner_trigger():
    return get_engine().trigger_now()


@app.get("/runner/status")
def runner_status():
    engine = get_engine()
    by_status: Dict[str, int] = {}
    for b in list(engine.bots.values()):
        by_status[b.status.value] = by_status.get(b.status.value, 0) + 1
    return {**get_scheduler().state.as_dict(), "bots": by_status}


@app.get("/runner/audit/tail")
def audit_tail(
    limit: int = Query(50, ge=1, le=500),
    bot_id: Optional[str] = None,
):
    return {"events": get_engine().audit.recent(bot_id=bot_id, limit=limit)}


# =========================
# Health / debug
# =========================
@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": _utc_now_iso(),
        "execution_mode": settings.EXECUTION_MODE,
        "backend_base_url": settings.BACKEND_BASE_URL,
        "tick_interval_seconds": settings.TICK_INTERVAL_SECONDS,
        "exit_policy": {
            "bearish_mode": settings.EXIT_BEARISH_MODE,
            "trend_threshold": settings.TREND_THRESHOLD,
            "retrace_buffer_pct": settings.EXIT_RETRACE_BUFFER_PCT,
        },
    }


def _settings_public_dict() -> Dict[str, Any]:
    data = settings.model_dump()
    # remove/mask secrets
    for k in list(data.keys()):
        if k in SENSITIVE_KEYS:
            data[k] = "***"
    return data


@app.get("/debug/config")
async def debug_config():
    return {"config": _settings_public_dict()}
