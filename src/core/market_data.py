"""
Market snapshot for one tick.

For each universe symbol: latest price, 24h change percent and a candle window
reduced to indicators. A failing symbol (or a failing 24h call) leaves None in
its slots and is logged; the snapshot is always produced.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from autopilot.indicators import compute_indicators, empty_indicators
from autopilot.schemas import MarketSnapshot, PositionItem
from core.models import OpenPosition
from execution.base import ExchangeClient

log = logging.getLogger(__name__)


def _position_items(positions: Iterable[OpenPosition]) -> List[PositionItem]:
    return [
        PositionItem(
            symbol=p.symbol,
            side=p.side.value,
            qty=p.qty,
            entry_price=p.entry_price,
            stop_loss=p.stop_loss,
            take_profit=p.take_profit,
            opened_at=p.opened_at,
        )
        for p in positions
    ]


def build_snapshot(
    exchange: ExchangeClient,
    universe: List[str],
    equity_usd: float,
    positions: Iterable[OpenPosition],
    at_ms: int,
    kline_interval: str = "1m",
    kline_limit: int = 120,
) -> MarketSnapshot:
    prices: Dict[str, Optional[float]] = {}
    change24h: Dict[str, Optional[float]] = {}
    indicators: Dict[str, Dict[str, Optional[float]]] = {}

    try:
        changes = exchange.get_24h_changes()
    except Exception as e:
        log.warning("24h ticker unavailable: %s", e)
        changes = {}

    for sym in universe:
        change24h[sym] = changes.get(sym)
        try:
            px = exchange.get_price(sym)
            prices[sym] = px if px > 0 else None
        except Exception as e:
            log.warning("price unavailable for %s: %s", sym, e)
            prices[sym] = None
        try:
            candles = exchange.get_klines(sym, kline_interval, kline_limit)
            indicators[sym] = compute_indicators(candles)
        except Exception as e:
            log.warning("klines unavailable for %s: %s", sym, e)
            indicators[sym] = empty_indicators()

    return MarketSnapshot(
        timestamp=at_ms,
        equity=float(equity_usd),
        positions=_position_items(positions),
        universe=list(universe),
        prices=prices,
        change24h=change24h,
        indicators=indicators,
    )
