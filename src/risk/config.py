import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from core.models import TraderConfig
from core.storage import TradeLedger


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    return float(v) if v not in (None, "") else float(default)


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    return int(v) if v not in (None, "") else int(default)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v in (None, ""):
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineSettings:
    """Process-wide engine constants, read from the environment once at start."""

    db_path: str = "data/trader.db"
    target_equity_fraction: float = 0.5
    min_order_notional_usd: float = 10.0
    order_cooldown_sec: float = 180.0
    loss_guard_enabled: bool = True
    loss_guard_count: int = 4
    loss_guard_total_usd: float = 150.0
    loss_guard_window_min: float = 30.0
    loss_guard_lookback: int = 10
    close_max_attempts: int = 8
    close_retry_delay_sec: float = 0.5
    open_confirm_attempts: int = 5
    closed_trades_cap: int = 2000
    equity_rolling_cap: int = 40320
    log_cap: int = 500
    status_force_interval_sec: float = 300.0
    status_equity_move_pct: float = 0.003
    status_hash_history: int = 12
    flip_mode: str = "close_then_open"
    slippage_attribution: str = "closed_leg"
    kline_interval: str = "1m"
    kline_limit: int = 120
    tick_interval_sec: float = 60.0
    scheduler_enabled: bool = True
    exchange_mode: str = "live"
    admin_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.flip_mode not in ("close_then_open", "netted"):
            raise ValueError(f"FLIP_MODE must be close_then_open or netted, got {self.flip_mode!r}")
        if self.slippage_attribution not in ("closed_leg", "opened_leg"):
            raise ValueError(f"SLIPPAGE_ATTRIBUTION must be closed_leg or opened_leg, got {self.slippage_attribution!r}")
        if self.exchange_mode not in ("live", "paper"):
            raise ValueError(f"EXCHANGE_MODE must be live or paper, got {self.exchange_mode!r}")

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            db_path=os.getenv("TRADER_DB", "data/trader.db"),
            target_equity_fraction=_env_float("TARGET_EQUITY_FRACTION", 0.5),
            min_order_notional_usd=_env_float("MIN_ORDER_NOTIONAL_USD", 10),
            order_cooldown_sec=_env_float("ORDER_COOLDOWN_SEC", 180),
            loss_guard_enabled=_env_bool("LOSS_GUARD_ENABLED", True),
            loss_guard_count=_env_int("LOSS_GUARD_COUNT", 4),
            loss_guard_total_usd=_env_float("LOSS_GUARD_TOTAL_USD", 150),
            loss_guard_window_min=_env_float("LOSS_GUARD_WINDOW_MIN", 30),
            loss_guard_lookback=_env_int("LOSS_GUARD_LOOKBACK", 10),
            close_max_attempts=_env_int("CLOSE_MAX_ATTEMPTS", 8),
            close_retry_delay_sec=_env_float("CLOSE_RETRY_DELAY_SEC", 0.5),
            open_confirm_attempts=_env_int("OPEN_CONFIRM_ATTEMPTS", 5),
            closed_trades_cap=_env_int("CLOSED_TRADES_CAP", 2000),
            equity_rolling_cap=_env_int("EQUITY_ROLLING_CAP", 40320),
            log_cap=_env_int("LOG_CAP", 500),
            status_force_interval_sec=_env_float("STATUS_FORCE_INTERVAL_SEC", 300),
            status_equity_move_pct=_env_float("STATUS_EQUITY_MOVE_PCT", 0.003),
            status_hash_history=_env_int("STATUS_HASH_HISTORY", 12),
            flip_mode=os.getenv("FLIP_MODE", "close_then_open").strip().lower(),
            slippage_attribution=os.getenv("SLIPPAGE_ATTRIBUTION", "closed_leg").strip().lower(),
            kline_interval=os.getenv("KLINE_INTERVAL", "1m"),
            kline_limit=_env_int("KLINE_LIMIT", 120),
            tick_interval_sec=_env_float("TICK_INTERVAL_SEC", 60),
            scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
            exchange_mode=os.getenv("EXCHANGE_MODE", "live").strip().lower(),
            admin_key=os.getenv("ADMIN_KEY") or None,
        )


# Load trader config from the ledger (defaults are written on first read)
def load_config(ledger: TradeLedger) -> TraderConfig:
    return ledger.config()


# Save trader config
def save_config(ledger: TradeLedger, cfg: TraderConfig) -> None:
    ledger.put_config(cfg)


def apply_overrides(cfg: TraderConfig, overrides: Optional[Dict[str, Any]], status: str) -> TraderConfig:
    """New config = current merged with non-null overrides, with ``status`` forced.

    An unknown margin mode falls back to ``cross``.
    """
    merged = cfg.model_dump()
    for k, v in (overrides or {}).items():
        if v is not None and k in merged and k != "status":
            merged[k] = v
    if merged.get("margin_mode") != "isolated":
        merged["margin_mode"] = "cross"
    merged["status"] = status
    return TraderConfig.model_validate(merged)
