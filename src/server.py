import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# --- Internal modules ---
from autopilot.planner_client_gpt import OracleConfigError
from autopilot.worker import AuthorizationError, AutopilotManager
from core.scheduler import TickScheduler
from execution.base import ExchangeConfigError, ExchangeError
from execution.container import get_manager, get_settings
from routers.exchange import router as exchange_router
from schemas import AnchorRequest, RunRequest

log = logging.getLogger(__name__)


# ---------- App + CORS ----------

app = FastAPI(title="Perp Autotrader API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(exchange_router)


# ---------- Globals ----------

# Periodic tick trigger (started with the app when SCHEDULER_ENABLED)
scheduler: Optional[TickScheduler] = None


# ---------- Error mapping ----------

@app.exception_handler(AuthorizationError)
async def _forbidden(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=403, content={"ok": False, "error": "forbidden"})


@app.exception_handler(ExchangeConfigError)
@app.exception_handler(OracleConfigError)
async def _misconfigured(request: Request, exc: RuntimeError):
    return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})


@app.exception_handler(ExchangeError)
async def _upstream(request: Request, exc: ExchangeError):
    return JSONResponse(status_code=502, content={"ok": False, "error": str(exc), "status": exc.status, "body": exc.body})


# ---------- App lifecycle (automation) ----------

@app.on_event("startup")
async def _on_startup():
    global scheduler
    settings = get_settings()
    if settings.scheduler_enabled:
        manager = get_manager()
        scheduler = TickScheduler(manager.tick, settings.tick_interval_sec)
        scheduler.start()
        log.info("tick scheduler started every %ss", settings.tick_interval_sec)

@app.on_event("shutdown")
async def _on_shutdown():
    # Stop scheduler gracefully
    global scheduler
    if scheduler:
        await scheduler.stop()
        scheduler = None


# ---------- Routes ----------

@app.get("/")
def health_check():
    return {"status": "ok"}


# --- Trader control ---

@app.get("/api/trader/status")
def trader_status(manager: AutopilotManager = Depends(get_manager)):
    out = manager.get_status()
    out["scheduler"] = {"running": bool(scheduler and scheduler.running)}
    return out

@app.post("/api/trader/run")
def trader_run(req: Optional[RunRequest] = None, x_admin_key: Optional[str] = Header(None),
               manager: AutopilotManager = Depends(get_manager)):
    overrides = req.model_dump(exclude_none=True) if req is not None else {}
    cfg = manager.run(overrides, x_admin_key)
    return {"ok": True, "config": cfg.model_dump(mode="json")}

@app.post("/api/trader/stop")
def trader_stop(x_admin_key: Optional[str] = Header(None), manager: AutopilotManager = Depends(get_manager)):
    cfg = manager.stop(x_admin_key)
    return {"ok": True, "config": cfg.model_dump(mode="json")}

@app.post("/api/trader/tick")
def trader_tick(manager: AutopilotManager = Depends(get_manager)):
    return manager.tick()


# --- Ledger & equity ---

@app.get("/api/trader/open-trades")
def open_trades(manager: AutopilotManager = Depends(get_manager)):
    return {"open": manager.get_open_trades()}

@app.get("/api/trader/trades")
def closed_trades(manager: AutopilotManager = Depends(get_manager)):
    return {"trades": manager.get_closed_trades()}

@app.get("/api/trader/trades/stats")
def trade_stats(manager: AutopilotManager = Depends(get_manager)):
    return manager.trade_stats()

@app.get("/api/trader/equity")
def equity_series(manager: AutopilotManager = Depends(get_manager)):
    return {"series": manager.get_equity_series()}

@app.get("/api/trader/logs")
def trader_logs(limit: int = 200, manager: AutopilotManager = Depends(get_manager)):
    return {"logs": manager.get_logs(max(1, min(int(limit), 200)))}

@app.post("/api/trader/anchor")
def set_anchor(req: Optional[AnchorRequest] = None, x_admin_key: Optional[str] = Header(None),
               manager: AutopilotManager = Depends(get_manager)):
    req = req or AnchorRequest()
    return {"ok": True, "anchor": manager.set_anchor(req.at, req.equity_usd, x_admin_key)}


# --- Diagnostics ---

@app.get("/api/trader/oracle-test")
def oracle_test(manager: AutopilotManager = Depends(get_manager)):
    return manager.oracle_test()
