# src/autopilot/schemas.py
from __future__ import annotations
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

# --- Oracle input ---

class PositionItem(BaseModel):
    symbol: str
    side: Literal['LONG', 'SHORT']
    qty: float
    entry_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    opened_at: int

class MarketSnapshot(BaseModel):
    timestamp: int
    equity: float
    positions: List[PositionItem] = []
    universe: List[str] = []
    prices: Dict[str, Optional[float]] = {}
    change24h: Dict[str, Optional[float]] = {}
    indicators: Dict[str, Dict[str, Optional[float]]] = {}

# --- Oracle output (strict) ---

class FlatPlan(BaseModel):
    model_config = ConfigDict(extra='ignore')
    action: Literal['FLAT']
    thesis: Optional[str] = None

class DirectionalPlan(BaseModel):
    model_config = ConfigDict(extra='ignore')
    action: Literal['LONG', 'SHORT']
    symbol: str
    size_usd: Optional[float] = Field(None, ge=0)
    thesis: Optional[str] = None
    stop_loss_price: Optional[float] = Field(None, gt=0)
    take_profit_price: Optional[float] = Field(None, gt=0)
    min_hold_minutes: Optional[float] = Field(None, ge=0)

TradePlan = Union[FlatPlan, DirectionalPlan]

_PLAN_ADAPTER = TypeAdapter(Annotated[TradePlan, Field(discriminator='action')])

class OracleDecision(BaseModel):
    """What one oracle call produced: the plan, its provenance, and any error."""
    plan: TradePlan = Field(discriminator='action')
    provider: str
    model: str
    raw: Optional[str] = None
    error: Optional[str] = None

# Helpers
def validate_plan(data: Any, universe: Sequence[str]) -> TradePlan:
    """
    Validates an oracle reply object against the tagged plan union.
    Raises pydantic.ValidationError on schema failure and ValueError for a symbol outside ``universe``.
    """
    plan = _PLAN_ADAPTER.validate_python(data, strict=True)
    if isinstance(plan, DirectionalPlan) and plan.symbol not in set(universe):
        raise ValueError(f"symbol {plan.symbol!r} not in universe")
    return plan

def flat_plan(thesis: Optional[str] = None) -> FlatPlan:
    return FlatPlan(action='FLAT', thesis=thesis)
