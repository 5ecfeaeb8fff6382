# src/execution/sim.py
import threading
from typing import Dict, List, Optional

from .base import ExchangeClient, ExchangeError
from .types import AccountSnapshot, Candle, LivePosition, OrderResult, OrderSide, SymbolRules


class PaperExchange(ExchangeClient):
    """
    In-memory futures venue for paper trading and tests.

    Fills:
      - MARKET orders fill immediately at the current price for the symbol
        (set with set_price), times ``fill_ratio`` of the requested quantity.
      - reduce_only orders are capped at the open quantity and never flip.
      - Symbols listed in ``stuck`` accept orders but never change position.

    Maintains one net position per symbol (signed qty, average entry) and a
    wallet balance that absorbs realized P&L.
    """

    name = "paper"

    def __init__(self, wallet_balance: float = 10_000.0, fill_ratio: float = 1.0):
        self.wallet_balance = float(wallet_balance)
        self.fill_ratio = float(fill_ratio)
        self.prices: Dict[str, float] = {}
        self.changes: Dict[str, float] = {}
        self.klines: Dict[str, List[Candle]] = {}
        self.symbol_rules: Dict[str, SymbolRules] = {}
        self.positions: Dict[str, Dict[str, float]] = {}
        self.orders: List[OrderResult] = []
        self.stuck: set = set()
        self.fail_orders: bool = False
        self._lock = threading.Lock()

    # ---------------- setup helpers ----------------

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = float(price)

    def set_rules(self, symbol: str, step_size: float = 0.0001, min_notional: Optional[float] = None) -> None:
        self.symbol_rules[symbol] = SymbolRules(symbol=symbol, step_size=step_size, min_notional=min_notional)

    def set_position(self, symbol: str, qty: float, entry_price: float) -> None:
        if qty == 0:
            self.positions.pop(symbol, None)
        else:
            self.positions[symbol] = {"qty": float(qty), "entry": float(entry_price)}

    # ---------------- ExchangeClient ----------------

    def _unrealized(self, symbol: str, pos: Dict[str, float]) -> float:
        mark = self.prices.get(symbol, pos["entry"])
        return (mark - pos["entry"]) * pos["qty"]

    def get_account(self) -> AccountSnapshot:
        with self._lock:
            upnl = sum(self._unrealized(s, p) for s, p in self.positions.items())
            return AccountSnapshot(
                wallet_balance=self.wallet_balance,
                unrealized_pnl=upnl,
                available_balance=self.wallet_balance,
            )

    def get_positions(self) -> List[LivePosition]:
        with self._lock:
            return [
                LivePosition(
                    symbol=s,
                    position_amt=p["qty"],
                    entry_price=p["entry"],
                    mark_price=self.prices.get(s, p["entry"]),
                    unrealized_pnl=self._unrealized(s, p),
                )
                for s, p in self.positions.items()
            ]

    def get_price(self, symbol: str) -> float:
        if symbol not in self.prices:
            raise ExchangeError(f"no price for {symbol}", status=400)
        return self.prices[symbol]

    def get_24h_changes(self) -> Dict[str, float]:
        return dict(self.changes)

    def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return list(self.klines.get(symbol, []))[-int(limit):]

    def get_symbol_rules(self, symbol: str) -> SymbolRules:
        return self.symbol_rules.get(symbol) or SymbolRules(symbol=symbol)

    def place_market_order(self, symbol: str, side: OrderSide, qty: float,
                           reduce_only: bool = False) -> OrderResult:
        price = self.prices.get(symbol, 0.0)
        if self.fail_orders or price <= 0 or qty <= 0:
            res = OrderResult(ok=False, status=400, symbol=symbol, side=side, qty=qty,
                              reduce_only=reduce_only, body={"code": -1, "msg": "rejected"})
            self.orders.append(res)
            return res

        with self._lock:
            pos = self.positions.get(symbol, {"qty": 0.0, "entry": 0.0})
            cur = pos["qty"]
            signed = qty if side == OrderSide.buy else -qty
            if reduce_only:
                # only the part that moves the position toward zero
                if cur == 0 or (cur > 0) == (signed > 0):
                    signed = 0.0
                elif abs(signed) > abs(cur):
                    signed = -cur
            filled = signed * self.fill_ratio
            if symbol in self.stuck:
                filled = 0.0

            new = cur + filled
            if filled != 0:
                if cur == 0 or (cur > 0) == (filled > 0):
                    # increase: weighted average entry
                    entry = (abs(cur) * pos["entry"] + abs(filled) * price) / abs(new)
                else:
                    closed = min(abs(filled), abs(cur))
                    direction = 1.0 if cur > 0 else -1.0
                    self.wallet_balance += (price - pos["entry"]) * closed * direction
                    entry = pos["entry"] if abs(filled) <= abs(cur) else price
                if abs(new) < 1e-12:
                    self.positions.pop(symbol, None)
                else:
                    self.positions[symbol] = {"qty": new, "entry": entry}

        res = OrderResult(
            ok=True,
            status=200,
            symbol=symbol,
            side=side,
            qty=qty,
            reduce_only=reduce_only,
            avg_price=price if filled else None,
            executed_qty=abs(filled) if filled else None,
            body={"status": "FILLED" if filled else "NEW", "avgPrice": str(price), "executedQty": str(abs(filled))},
        )
        self.orders.append(res)
        return res
