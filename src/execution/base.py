from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from .types import AccountSnapshot, Candle, LivePosition, OrderResult, OrderSide, SymbolRules


class ExchangeConfigError(RuntimeError):
    """Exchange endpoint or credentials are not configured."""


class ExchangeError(RuntimeError):
    def __init__(self, message: str, status: int = 0, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class ExchangeClient(ABC):
    """Futures venue as seen by the engine (live REST or paper)."""

    name: str = "exchange"

    @abstractmethod
    def get_account(self) -> AccountSnapshot: ...
    @abstractmethod
    def get_positions(self) -> List[LivePosition]: ...
    @abstractmethod
    def get_price(self, symbol: str) -> float: ...
    @abstractmethod
    def get_24h_changes(self) -> Dict[str, float]: ...
    @abstractmethod
    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]: ...
    @abstractmethod
    def get_symbol_rules(self, symbol: str) -> SymbolRules: ...
    @abstractmethod
    def place_market_order(self, symbol: str, side: OrderSide, qty: float,
                           reduce_only: bool = False) -> OrderResult: ...

    def get_position(self, symbol: str) -> Optional[LivePosition]:
        for p in self.get_positions():
            if p.symbol == symbol:
                return p
        return None
