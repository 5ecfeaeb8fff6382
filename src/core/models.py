"""
Data models for the trader configuration, runtime state, positions, closed
trades and equity samples.

These are pydantic models serialized as JSON documents into the key/value
store (see core.storage). Timestamps are epoch milliseconds.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from execution.types import PositionSide

DEFAULT_UNIVERSE: List[str] = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "XRPUSDT", "DOGEUSDT", "SOLUSDT",
    "ASTERUSDT", "CAKEUSDT", "ZORAUSDT", "PUMPUSDT", "ZECUSDT",
]


class TraderConfig(BaseModel):
    """
    Admin-controlled trader configuration. Replaced wholesale, never edited in place.
    """
    status: Literal["running", "stopped"] = Field(default="stopped", description="Whether ticks may trade")
    universe: List[str] = Field(default_factory=lambda: list(DEFAULT_UNIVERSE), description="Tradable symbols")
    max_risk_per_trade_usd: float = Field(default=1500, description="Cap on notional per new position")
    max_daily_loss_usd: float = Field(default=2000, description="Refuse opens once today's realized loss reaches this")
    max_exposure_usd: float = Field(default=10000, description="Cap on summed open notional")
    leverage_cap: float = Field(default=5, description="Exposure may not exceed equity times this")
    margin_mode: Literal["cross", "isolated"] = "cross"
    model: str = Field(default="qwen2.5-32b-instruct", description="Oracle model name")
    max_loss_per_trade_usd: float = Field(default=200, description="Hard unrealized loss exit; 0 disables")


class RuntimeState(BaseModel):
    """
    Mutable per-tick bookkeeping, persisted at tick end.
    """
    last_tick_at: Optional[int] = None
    last_error: Optional[str] = None
    last_provider: Optional[str] = None
    last_model: Optional[str] = None
    last_order_at: Optional[int] = None
    last_signal: Optional[dict] = None


class OpenPosition(BaseModel):
    """
    A position the engine opened and still tracks. At most one per symbol.
    """
    symbol: str
    side: PositionSide
    qty: float
    entry_price: float
    notional_entry: float
    opened_at: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    min_hold_ms: Optional[int] = None
    thesis: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class ClosedTrade(OpenPosition):
    """
    Immutable record of a completed round trip.
    """
    exit_price: float
    notional_exit: float
    closed_at: int
    holding_ms: int
    pnl_usd: float


class EquitySample(BaseModel):
    at: int
    equity_usd: float


class EquityAnchor(EquitySample):
    """Start point of the reported equity series."""


class StatusRecord(BaseModel):
    """Last emitted status: when, at what equity, and recent content hashes."""
    at: int
    equity_usd: float
    hashes: List[str] = Field(default_factory=list)
