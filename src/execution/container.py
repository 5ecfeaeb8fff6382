# src/execution/container.py
from __future__ import annotations

import logging
import threading
from typing import Optional

from core.storage import KVStore, TradeLedger
from risk.config import EngineSettings
from .base import ExchangeClient

log = logging.getLogger(__name__)

_lock = threading.Lock()
_settings: Optional[EngineSettings] = None
_store: Optional[KVStore] = None
_exchange: Optional[ExchangeClient] = None
_manager = None  # AutopilotManager


def get_settings() -> EngineSettings:
    global _settings
    if _settings is None:
        _settings = EngineSettings.from_env()
    return _settings


def get_ledger() -> TradeLedger:
    global _store
    s = get_settings()
    with _lock:
        if _store is None:
            _store = KVStore(s.db_path)
    return TradeLedger(_store, closed_cap=s.closed_trades_cap, equity_cap=s.equity_rolling_cap, log_cap=s.log_cap)


def get_exchange() -> ExchangeClient:
    """Return the exchange client selected by EXCHANGE_MODE (live REST or paper)."""
    global _exchange
    with _lock:
        if _exchange is None:
            if get_settings().exchange_mode == "paper":
                from .sim import PaperExchange
                _exchange = PaperExchange()
            else:
                from core.aster_client import AsterClient
                _exchange = AsterClient()
            log.info("exchange client: %s", _exchange.name)
    return _exchange


def get_manager():
    """Return the process-wide AutopilotManager."""
    global _manager
    if _manager is None:
        from autopilot.worker import AutopilotManager
        manager = AutopilotManager(get_ledger(), get_exchange(), get_settings())
        with _lock:
            if _manager is None:
                _manager = manager
    return _manager


def reset() -> None:
    """Drop cached singletons (tests, config reload)."""
    global _settings, _store, _exchange, _manager
    with _lock:
        if _store is not None:
            _store.close()
        _settings = _store = _exchange = _manager = None
