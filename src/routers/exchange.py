from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from autopilot.worker import AutopilotManager
from execution.base import ExchangeClient, ExchangeError
from execution.container import get_exchange, get_manager
from execution.types import LivePosition
from schemas import CloseStaleRequest

router = APIRouter(prefix="/api/exchange", tags=["exchange"])


@router.get("/positions", response_model=List[LivePosition])
def list_positions(exchange: ExchangeClient = Depends(get_exchange)):
    try:
        return [p for p in exchange.get_positions() if not p.is_flat]
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))


class BalanceView(BaseModel):
    wallet_balance: float
    unrealized_pnl: float
    available_balance: float
    equity_usd: float


@router.get("/balances", response_model=BalanceView)
def balances(exchange: ExchangeClient = Depends(get_exchange)):
    try:
        acct = exchange.get_account()
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return BalanceView(**acct.model_dump(), equity_usd=acct.equity_usd)


class PricesView(BaseModel):
    prices: Dict[str, Optional[float]]


@router.get("/prices", response_model=PricesView)
def prices(symbols: Optional[str] = None, exchange: ExchangeClient = Depends(get_exchange),
           manager: AutopilotManager = Depends(get_manager)):
    wanted = [s.strip() for s in symbols.split(",") if s.strip()] if symbols else manager.get_status()["config"]["universe"]
    out: Dict[str, Optional[float]] = {}
    for sym in wanted:
        try:
            out[sym] = exchange.get_price(sym)
        except ExchangeError:
            out[sym] = None
    return {"prices": out}


@router.post("/close-all")
def close_all(x_admin_key: Optional[str] = Header(None), manager: AutopilotManager = Depends(get_manager)):
    return manager.close_all_positions(x_admin_key)


@router.post("/close-stale")
def close_stale(req: Optional[CloseStaleRequest] = None, x_admin_key: Optional[str] = Header(None),
                manager: AutopilotManager = Depends(get_manager)):
    min_minutes = req.min_minutes if req is not None else CloseStaleRequest().min_minutes
    return manager.close_stale_positions(min_minutes, x_admin_key)
