from pydantic import BaseModel
from typing import List, Optional

class RunRequest(BaseModel):
  universe: Optional[List[str]] = None
  max_risk_per_trade_usd: Optional[float] = None
  max_daily_loss_usd: Optional[float] = None
  max_exposure_usd: Optional[float] = None
  leverage_cap: Optional[float] = None
  margin_mode: Optional[str] = None
  model: Optional[str] = None
  max_loss_per_trade_usd: Optional[float] = None

class AnchorRequest(BaseModel):
  at: Optional[int] = None
  equity_usd: Optional[float] = None

class CloseStaleRequest(BaseModel):
  min_minutes: float = 60
