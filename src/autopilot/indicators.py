# src/autopilot/indicators.py
from __future__ import annotations
from typing import Dict, List, Optional, Sequence

from execution.types import Candle

MIN_CANDLES = 21
RANGE_WINDOW = 30


def ema(values: List[float], period: int) -> Optional[float]:
    if not values:
        return None
    k = 2.0 / (period + 1)
    prev = values[0]
    for v in values[1:]:
        prev = v * k + prev * (1 - k)
    return prev


def rsi(closes: List[float], period: int = 14) -> Optional[float]:
    # Wilder smoothing; the first average covers changes 1..period
    if len(closes) < period + 1:
        return None
    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i-1]
        if diff >= 0: gains += diff
        else: losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period
    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i-1]
        avg_gain = (avg_gain * (period - 1) + max(diff, 0.0)) / period
        avg_loss = (avg_loss * (period - 1) + max(-diff, 0.0)) / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def true_ranges(highs: List[float], lows: List[float], closes: List[float]) -> List[float]:
    n = min(len(highs), len(lows), len(closes))
    trs = []
    for i in range(n):
        if i == 0:
            trs.append(highs[0] - lows[0])
            continue
        pc = closes[i-1]
        trs.append(max(highs[i] - lows[i], abs(highs[i] - pc), abs(lows[i] - pc)))
    return trs


def atr(highs: List[float], lows: List[float], closes: List[float], period: int = 14) -> Optional[float]:
    trs = true_ranges(highs, lows, closes)
    if len(trs) <= period:
        return None
    prev = sum(trs[:period]) / float(period)
    for tr in trs[period:]:
        prev = (prev * (period - 1) + tr) / period
    return prev


def vwap(candles: Sequence[Candle]) -> Optional[float]:
    pv = 0.0
    vol = 0.0
    for c in candles:
        tp = (c.high + c.low + c.close) / 3.0
        pv += tp * c.volume
        vol += c.volume
    return pv / vol if vol > 0 else None


def range_pct(candles: Sequence[Candle], window: int = RANGE_WINDOW) -> Optional[float]:
    if not candles:
        return None
    win = list(candles)[-window:]
    last = candles[-1].close
    if last <= 0:
        return None
    hi = max(c.high for c in win)
    lo = min(c.low for c in win)
    return (hi - lo) / last * 100.0


def empty_indicators() -> Dict[str, Optional[float]]:
    return {"ema9": None, "ema21": None, "rsi14": None, "atr14": None, "vwap": None, "rangePct": None}


def compute_indicators(candles: Sequence[Candle]) -> Dict[str, Optional[float]]:
    """ema9/ema21/rsi14/atr14/vwap/rangePct for a candle window; all None below 21 candles."""
    if len(candles) < MIN_CANDLES:
        return empty_indicators()
    closes = [c.close for c in candles]
    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    return {
        "ema9": ema(closes, 9),
        "ema21": ema(closes, 21),
        "rsi14": rsi(closes, 14),
        "atr14": atr(highs, lows, closes, 14),
        "vwap": vwap(candles),
        "rangePct": range_pct(candles),
    }
