from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field


class OrderSide(str, Enum):
    buy = "BUY"
    sell = "SELL"


class PositionSide(str, Enum):
    long = "LONG"
    short = "SHORT"


def entry_side(side: PositionSide) -> OrderSide:
    return OrderSide.buy if side == PositionSide.long else OrderSide.sell


def exit_side(side: PositionSide) -> OrderSide:
    return OrderSide.sell if side == PositionSide.long else OrderSide.buy


class SymbolRules(BaseModel):
    symbol: str
    step_size: float = 0.0001
    min_notional: Optional[float] = None


class LivePosition(BaseModel):
    """Exchange-reported position; position_amt is signed (long > 0)."""
    symbol: str
    position_amt: float = 0.0
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0

    @property
    def is_flat(self) -> bool:
        return abs(self.position_amt) <= 0

    @property
    def side(self) -> Optional[PositionSide]:
        if self.position_amt > 0:
            return PositionSide.long
        if self.position_amt < 0:
            return PositionSide.short
        return None


class AccountSnapshot(BaseModel):
    wallet_balance: float = 0.0
    unrealized_pnl: float = 0.0
    available_balance: float = 0.0

    @property
    def equity_usd(self) -> float:
        eq = self.wallet_balance + self.unrealized_pnl
        return eq if eq > 0 else self.available_balance


class Candle(BaseModel):
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


class OrderResult(BaseModel):
    ok: bool
    status: int
    symbol: str
    side: OrderSide
    qty: float
    reduce_only: bool = False
    avg_price: Optional[float] = None
    executed_qty: Optional[float] = None
    body: Any = None

    def fill_price(self, fallback: float) -> float:
        if self.avg_price and self.avg_price > 0:
            return float(self.avg_price)
        return float(fallback)

    def filled_qty(self) -> float:
        # an ack without executedQty counts as fully filled; close loops confirm against the live position
        if self.executed_qty and self.executed_qty > 0:
            return float(self.executed_qty)
        return float(self.qty)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(8, ge=1)
    delay_sec: float = Field(0.5, ge=0.0)
