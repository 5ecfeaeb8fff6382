from __future__ import annotations

import logging
import math
from decimal import Decimal
from typing import Dict

from .base import ExchangeClient
from .types import OrderResult, OrderSide, SymbolRules

log = logging.getLogger(__name__)


def step_decimals(step: float) -> int:
    exp = Decimal(repr(float(step))).normalize().as_tuple().exponent
    return max(0, -int(exp))


def quantize(qty: float, step: float) -> float:
    """Round ``qty`` down to a whole number of steps, never below one step.

    Non-positive input gives 0. quantize(quantize(q, s), s) == quantize(q, s).
    """
    if qty <= 0 or step <= 0:
        return 0.0
    # small epsilon so an already-quantized float does not drop a step
    steps = math.floor(qty / step + 1e-9)
    return round(max(1, steps) * step, step_decimals(step))


class OrderGateway:
    """Sizes and submits MARKET orders against one exchange, honoring lot rules."""

    def __init__(self, exchange: ExchangeClient):
        self.exchange = exchange
        self._rules: Dict[str, SymbolRules] = {}

    def rules(self, symbol: str) -> SymbolRules:
        if symbol not in self._rules:
            self._rules[symbol] = self.exchange.get_symbol_rules(symbol)
        return self._rules[symbol]

    def quantize(self, symbol: str, qty: float) -> float:
        return quantize(qty, self.rules(symbol).step_size)

    def size_order(self, symbol: str, notional_usd: float, price: float) -> float:
        if price <= 0 or notional_usd <= 0:
            return 0.0
        r = self.rules(symbol)
        qty = quantize(notional_usd / price, r.step_size)
        if r.min_notional and qty * price < r.min_notional:
            steps = math.ceil(r.min_notional / price / r.step_size - 1e-9)
            qty = round(steps * r.step_size, step_decimals(r.step_size))
        return qty

    def submit_market(self, symbol: str, side: OrderSide, qty: float,
                      reduce_only: bool = False) -> OrderResult:
        res = self.exchange.place_market_order(symbol, side, qty, reduce_only=reduce_only)
        log.info(
            "order %s %s qty=%s reduce_only=%s -> ok=%s status=%s avg=%s",
            symbol, side.value, qty, reduce_only, res.ok, res.status, res.avg_price,
        )
        return res
