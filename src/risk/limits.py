# src/risk/limits.py
"""
Opening-order checks used by the tick orchestrator and the lifecycle manager.
Raises ValueError("reason") when a check fails; callers translate to a logged SKIP.
Exits are never subject to these checks.
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from core.models import ClosedTrade, OpenPosition
from core.risk import RiskGovernor
from risk.config import EngineSettings


def loss_guard_tripped(closed: Sequence[ClosedTrade], settings: EngineSettings, now_ms: int) -> bool:
    """True when recent closes show enough losses to pause new opens."""
    if not settings.loss_guard_enabled:
        return False
    window_ms = settings.loss_guard_window_min * 60_000
    recent = list(closed)[-settings.loss_guard_lookback:] if settings.loss_guard_lookback > 0 else []
    losers = [t for t in recent if now_ms - t.closed_at <= window_ms and t.pnl_usd < 0]
    total = sum(t.pnl_usd for t in losers)
    return len(losers) >= settings.loss_guard_count and total < -settings.loss_guard_total_usd


def enforce_open_limits(
    governor: RiskGovernor,
    settings: EngineSettings,
    *,
    symbol: str,
    size_usd: float,
    equity_usd: float,
    positions: Dict[str, OpenPosition],
    closed: Sequence[ClosedTrade],
    last_order_at: Optional[int],
    realized_today: float,
    now_ms: int,
    flipping: bool = False,
) -> None:
    """
    Raises ValueError with message if opening ``size_usd`` on ``symbol`` would violate a limit.
    """
    if size_usd < governor.min_notional_usd:
        raise ValueError(f"size ${size_usd:.2f} below minimum ${governor.min_notional_usd:.2f}")

    if last_order_at is not None and now_ms - last_order_at <= settings.order_cooldown_sec * 1000:
        raise ValueError("order cooldown active")

    if loss_guard_tripped(closed, settings, now_ms):
        raise ValueError("recent loss guard tripped")

    cap_loss = float(governor.cfg.max_daily_loss_usd or 0)
    if cap_loss > 0 and realized_today <= -cap_loss:
        raise ValueError(f"daily loss ${-realized_today:.2f} reached cap ${cap_loss:.2f}")

    limit = governor.exposure_limit(equity_usd)
    current = governor.open_exposure(positions, exclude=symbol if flipping else None)
    if current + size_usd > limit:
        raise ValueError(f"exposure ${current + size_usd:.2f} exceeds cap ${limit:.2f}")
