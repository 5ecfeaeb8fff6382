# src/autopilot/narrator.py
"""
Human-readable status lines for ticks that end FLAT, rate-limited by novelty.

A status is suppressed only when its content hash was emitted recently, equity
barely moved, and the forced-emit interval has not elapsed.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.models import OpenPosition, StatusRecord
from core.storage import TradeLedger
from execution.types import PositionSide
from risk.config import EngineSettings

log = logging.getLogger(__name__)


def _px(v: Optional[float]) -> str:
    if v is None:
        return "-"
    return f"${v:.2f}" if v >= 1 else f"${v:.4f}"


def _base(symbol: str) -> str:
    return symbol.replace("USDT", "")


@dataclass
class _View:
    pos: OpenPosition
    price: Optional[float]
    upnl: Optional[float]
    hold_left_min: Optional[int]


class StatusNarrator:
    def __init__(self, ledger: TradeLedger, settings: EngineSettings):
        self.ledger = ledger
        self.settings = settings

    def _views(self, positions: List[OpenPosition], prices: Dict[str, Optional[float]], now: int) -> List[_View]:
        out = []
        for p in positions:
            px = prices.get(p.symbol)
            upnl = None
            if px:
                sign = 1.0 if p.side == PositionSide.long else -1.0
                upnl = (px - p.entry_price) * p.qty * sign
            left = None
            if p.min_hold_ms is not None:
                remaining = p.min_hold_ms - (now - p.opened_at)
                if remaining > 0:
                    left = math.ceil(remaining / 60_000)
            out.append(_View(p, px, upnl, left))
        return out

    @staticmethod
    def nearest_invalidation(views: List[_View]) -> Optional[Dict[str, Any]]:
        best = None
        for v in views:
            if not v.price:
                continue
            for kind, target in (("SL", v.pos.stop_loss), ("TP", v.pos.take_profit)):
                if target is None or target <= 0:
                    continue
                dist = abs((v.price - target) / v.price) * 100
                if best is None or dist < best["dist"]:
                    best = {"symbol": v.pos.symbol, "kind": kind, "dist": dist}
        return best

    def compose(self, equity_usd: float, cash_usd: float, positions: List[OpenPosition],
                prices: Dict[str, Optional[float]], thesis: Optional[str], now: int) -> Dict[str, Any]:
        views = self._views(positions, prices, now)
        init = self.ledger.initial_equity()
        perf = 0.0
        if init and init.equity_usd > 0 and equity_usd > 0:
            perf = (equity_usd - init.equity_usd) / init.equity_usd * 100
        perf_str = f"{'Up' if perf >= 0 else 'Down'} {abs(perf):.2f}%"
        cash_str = f"${cash_usd:.2f}"
        variant = (now // 60_000) % 3

        if views:
            f = views[0]
            side = f.pos.side.value.lower()
            qty = f"{abs(f.pos.qty):.4f}"
            u = f"${f.upnl:.2f}" if f.upnl is not None else "-"
            hold = f", ~{f.hold_left_min}m min-hold left" if f.hold_left_min is not None else ""
            tp, sl = _px(f.pos.take_profit), _px(f.pos.stop_loss)
            if variant == 0:
                primary = (f"My capital is {perf_str.lower()} to ${equity_usd:.0f}. I'm holding {_base(f.pos.symbol)} "
                           f"{side} ({qty}) with an unrealized {u}. Plan: target {tp}, stop {sl}{hold}.")
            elif variant == 1:
                primary = (f"{perf_str} overall; keeping a {side} on {_base(f.pos.symbol)} from "
                           f"{_px(f.pos.entry_price)} to {_px(f.price)}. Clear exit: TP {tp}, SL {sl}{hold}.")
            else:
                primary = (f"{perf_str} and steady. Core position is {_base(f.pos.symbol)} {side} ({qty}); "
                           f"unrealized {u}. Will exit on {sl} or take profits near {tp}.")
        else:
            primary = (f"{perf_str} to ${equity_usd:.0f} with {cash_str} cash. "
                       f"No open positions; waiting for a clean short-term setup.")

        extra = []
        with_pnl = [v for v in views if v.upnl is not None]
        if with_pnl:
            big = max(with_pnl, key=lambda v: abs(v.upnl))
            extra.append(f"Biggest mover: {_base(big.pos.symbol)} {big.pos.side.value.lower()} "
                         f"({'+' if big.upnl >= 0 else '-'}${abs(big.upnl):.0f})")
        nearest = self.nearest_invalidation(views)
        if nearest:
            extra.append(f"Nearest {nearest['kind']} on {_base(nearest['symbol'])} ~{nearest['dist']:.1f}%")
        summary = primary
        if extra:
            summary += " " + ". ".join(extra) + "."
        if thesis and thesis.strip():
            summary += " " + thesis.strip()

        facts = {
            "open": [[v.pos.symbol, v.pos.side.value, v.pos.qty, v.pos.stop_loss, v.pos.take_profit] for v in views],
            "nearest": [nearest["symbol"], nearest["kind"], round(nearest["dist"], 1)] if nearest else None,
            "thesis": (thesis or "").strip(),
            "cash": cash_str,
        }
        digest = hashlib.sha256(json.dumps(facts, sort_keys=True).encode("utf-8")).hexdigest()
        unrealized = sum(v.upnl for v in with_pnl)
        return {"summary": summary, "hash": digest, "unrealized_usd": round(unrealized, 2)}

    def should_emit(self, digest: str, equity_usd: float, now: int) -> bool:
        last = self.ledger.last_status()
        if last is None:
            return True
        duplicate = digest in last.hashes
        move = abs(equity_usd - last.equity_usd) / last.equity_usd if last.equity_usd > 0 else 0.0
        elapsed_sec = (now - last.at) / 1000.0
        suppress = (
            duplicate
            and move < self.settings.status_equity_move_pct
            and elapsed_sec < self.settings.status_force_interval_sec
        )
        return not suppress

    def narrate(self, equity_usd: float, cash_usd: float, positions: List[OpenPosition],
                prices: Dict[str, Optional[float]], thesis: Optional[str], now: int) -> Dict[str, Any]:
        status = self.compose(equity_usd, cash_usd, positions, prices, thesis, now)
        if not self.should_emit(status["hash"], equity_usd, now):
            return {"type": "trader_status", "skipped": True}
        entry = self.ledger.append_log("trader_status", at=now, equity_usd=equity_usd,
                                       unrealized_usd=status["unrealized_usd"], summary=status["summary"])
        last = self.ledger.last_status()
        hashes = [status["hash"]] + [h for h in (last.hashes if last else []) if h != status["hash"]]
        self.ledger.put_last_status(StatusRecord(at=now, equity_usd=equity_usd,
                                                 hashes=hashes[: self.settings.status_hash_history]))
        log.info("status: %s", status["summary"])
        return entry
