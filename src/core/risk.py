"""
Risk governor for the trading engine.

This module defines a RiskGovernor class which turns account equity and the
trader configuration into a per-trade notional and an exposure ceiling. The
opening guards that refuse an order live in risk.limits.
"""

import math
from typing import Dict, Optional

from core.models import OpenPosition, TraderConfig


class RiskGovernor:
    """
    Computes order size and exposure limits.
    """

    def __init__(self, cfg: TraderConfig, target_equity_fraction: float = 0.5, min_notional_usd: float = 10.0) -> None:
        """
        Initialize the governor.

        Args:
            cfg (TraderConfig): Current trader configuration.
            target_equity_fraction (float): Fraction of equity a single position may use.
            min_notional_usd (float): Orders below this notional are refused.
        """
        self.cfg = cfg
        self.target_equity_fraction = float(target_equity_fraction)
        self.min_notional_usd = float(min_notional_usd)

    def size_usd(self, equity_usd: float) -> float:
        """
        Notional for a new position.

        Args:
            equity_usd (float): Current account equity.

        Returns:
            float: min(max risk per trade, floor(equity * target fraction)), never negative.
        """
        target = math.floor(max(0.0, float(equity_usd)) * self.target_equity_fraction)
        return float(max(0.0, min(float(self.cfg.max_risk_per_trade_usd), target)))

    def exposure_limit(self, equity_usd: float) -> float:
        """
        Ceiling on summed open notional: min(max exposure, equity * leverage cap).
        """
        lev_cap = max(0.0, float(equity_usd)) * float(self.cfg.leverage_cap)
        return min(float(self.cfg.max_exposure_usd), lev_cap)

    def open_exposure(self, positions: Dict[str, OpenPosition], exclude: Optional[str] = None) -> float:
        return sum(abs(p.notional_entry) for s, p in positions.items() if s != exclude)
