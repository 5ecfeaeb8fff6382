# src/autopilot/worker.py (tick orchestrator + control surface)
from __future__ import annotations

import hmac
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from core.market_data import build_snapshot
from core.models import RuntimeState, TraderConfig
from core.risk import RiskGovernor
from core.storage import TradeLedger, now_ms
from execution.base import ExchangeClient, ExchangeError
from execution.gateway import OrderGateway
from execution.types import AccountSnapshot
from risk.config import EngineSettings, apply_overrides, load_config, save_config
from risk.limits import enforce_open_limits
from .lifecycle import CloseOutcome, PositionLifecycle
from .narrator import StatusNarrator
from .planner_client import get_planner_client
from .planner_client_gpt import user_message
from .schemas import DirectionalPlan, MarketSnapshot, OracleDecision

log = logging.getLogger(__name__)

PROMPT_LOG_CHARS = 2000


class AuthorizationError(RuntimeError):
    """Missing or wrong admin secret."""


def _outcomes(items: List[CloseOutcome]) -> List[Dict[str, Any]]:
    return [
        {"status": o.status, "orders": o.orders, "trade": o.trade.model_dump(mode="json") if o.trade else None}
        for o in items
    ]


class AutopilotManager:
    """
    One tick: sense (account, exits, market snapshot) -> think (oracle) -> act
    (open, flip or narrate). Ticks are single-flight; equity is sampled on every
    tick that could read it, even when a later step fails.
    """

    def __init__(self, ledger: TradeLedger, exchange: ExchangeClient, settings: EngineSettings,
                 planner=None, clock=now_ms, sleep=time.sleep):
        self.ledger = ledger
        self.exchange = exchange
        self.settings = settings
        self.clock = clock
        self.gateway = OrderGateway(exchange)
        self.lifecycle = PositionLifecycle(ledger, self.gateway, settings, clock=clock, sleep=sleep)
        self.narrator = StatusNarrator(ledger, settings)
        self._planner = planner or get_planner_client()
        self._tick_lock = threading.Lock()

    # ---------------- tick ----------------

    def tick(self) -> Dict[str, Any]:
        if not self._tick_lock.acquire(blocking=False):
            return {"ok": False, "skipped": "busy"}
        try:
            return self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> Dict[str, Any]:
        now = self.clock()
        cfg = load_config(self.ledger)
        runtime = self.ledger.runtime()
        runtime.last_tick_at = now
        meta: Dict[str, Any] = {"at": now, "status": cfg.status}
        equity: Optional[float] = None
        try:
            try:
                account = self.exchange.get_account()
            except ExchangeError as e:
                # exits do not depend on equity; enforce them before giving up on the tick
                log.warning("account read failed: %s", e)
                if cfg.status == "running":
                    exits = self.lifecycle.enforce_exits(cfg)
                    if exits:
                        meta["exits"] = _outcomes(exits)
                raise
            equity = account.equity_usd
            meta["equity_usd"] = equity
            self.ledger.ensure_initial_equity(now, equity)
            if cfg.status != "running":
                runtime.last_error = None
                return {"ok": True, "meta": meta}

            exits = self.lifecycle.enforce_exits(cfg)
            if exits:
                meta["exits"] = _outcomes(exits)

            snapshot = self._sense(cfg, equity, now)
            decision = self._think(snapshot, cfg, runtime, now)
            result = self._act(decision, snapshot, cfg, runtime, account, now)
            runtime.last_error = None
            out: Dict[str, Any] = {"ok": True, "meta": meta, "decision": decision.model_dump(mode="json")}
            out.update(result)
            return out
        except Exception as e:
            runtime.last_error = str(e)
            log.exception("tick failed")
            self.ledger.append_log("trader_error", at=now, error=str(e), stage="tick")
            return {"ok": False, "meta": meta, "error": str(e)}
        finally:
            if equity is not None:
                self.ledger.sample_equity(now, equity)
            self.ledger.put_runtime(runtime)

    def _sense(self, cfg: TraderConfig, equity: float, now: int) -> MarketSnapshot:
        positions = self.ledger.open_positions().values()
        return build_snapshot(self.exchange, cfg.universe, equity, positions, now,
                              self.settings.kline_interval, self.settings.kline_limit)

    def _think(self, snapshot: MarketSnapshot, cfg: TraderConfig, runtime: RuntimeState, now: int) -> OracleDecision:
        self.ledger.append_log("trader_prompt", at=now, model=cfg.model,
                               state=user_message(snapshot)[:PROMPT_LOG_CHARS])
        decision = self._planner.decide(snapshot, cfg)
        runtime.last_provider = decision.provider
        runtime.last_model = decision.model
        runtime.last_signal = decision.plan.model_dump(mode="json")
        self.ledger.append_log("trader_oracle_response", at=now, provider=decision.provider,
                               model=decision.model, raw=decision.raw, error=decision.error)
        self.ledger.append_log("trader_decision", at=now, **decision.plan.model_dump(mode="json"))
        return decision

    def _skip(self, now: int, symbol: Optional[str], reason: str) -> Dict[str, Any]:
        log.info("skip %s: %s", symbol, reason)
        self.ledger.append_log("trader_skip", at=now, symbol=symbol, reason=reason)
        return {"skipped": reason}

    def _act(self, decision: OracleDecision, snapshot: MarketSnapshot, cfg: TraderConfig,
             runtime: RuntimeState, account: AccountSnapshot, now: int) -> Dict[str, Any]:
        plan = decision.plan
        positions = self.ledger.open_positions()

        if not isinstance(plan, DirectionalPlan):
            status = self.narrator.narrate(account.equity_usd, account.available_balance,
                                           list(positions.values()), snapshot.prices, plan.thesis, now)
            return {"status": status}

        existing = positions.get(plan.symbol)
        if existing is not None and existing.side.value == plan.action:
            return self._skip(now, plan.symbol, "already_open")

        governor = RiskGovernor(cfg, self.settings.target_equity_fraction, self.settings.min_order_notional_usd)
        equity = account.equity_usd
        size = governor.size_usd(equity)
        try:
            enforce_open_limits(
                governor,
                self.settings,
                symbol=plan.symbol,
                size_usd=size,
                equity_usd=equity,
                positions=positions,
                closed=self.ledger.closed_trades(),
                last_order_at=runtime.last_order_at,
                realized_today=self.ledger.realized_today(now),
                now_ms=now,
                flipping=existing is not None,
            )
        except ValueError as e:
            return self._skip(now, plan.symbol, str(e))

        try:
            price = snapshot.prices.get(plan.symbol) or self.exchange.get_price(plan.symbol)
            if existing is not None:
                pos = self.lifecycle.flip(existing, plan, size, price, runtime, decision.provider, decision.model)
            else:
                pos = self.lifecycle.open_position(plan, size, price, runtime, decision.provider, decision.model)
        except ValueError as e:
            return self._skip(now, plan.symbol, str(e))
        except ExchangeError as e:
            self.ledger.append_log("trader_order_error", at=now, symbol=plan.symbol, error=str(e),
                                   status=e.status, body=e.body)
            log.warning("order for %s abandoned: %s", plan.symbol, e)
            return {"order_error": str(e)}
        return {"opened": pos.model_dump(mode="json") if pos else None, "size_usd": size}

    # ---------------- control surface ----------------

    def _authorize(self, admin_key: Optional[str]) -> None:
        expected = self.settings.admin_key
        if not expected or not admin_key or not hmac.compare_digest(str(admin_key), str(expected)):
            raise AuthorizationError("forbidden")

    def get_status(self) -> Dict[str, Any]:
        return {
            "config": load_config(self.ledger).model_dump(mode="json"),
            "runtime": self.ledger.runtime().model_dump(mode="json"),
        }

    def run(self, overrides: Optional[Dict[str, Any]], admin_key: Optional[str]) -> TraderConfig:
        self._authorize(admin_key)
        cfg = apply_overrides(load_config(self.ledger), overrides, "running")
        save_config(self.ledger, cfg)
        log.info("trader started: %s", cfg.model_dump(mode="json"))
        return cfg

    def stop(self, admin_key: Optional[str]) -> TraderConfig:
        self._authorize(admin_key)
        cfg = apply_overrides(load_config(self.ledger), None, "stopped")
        save_config(self.ledger, cfg)
        log.info("trader stopped")
        return cfg

    def get_open_trades(self) -> List[Dict[str, Any]]:
        return [p.model_dump(mode="json") for p in self.ledger.open_positions().values()]

    def get_closed_trades(self) -> List[Dict[str, Any]]:
        return [t.model_dump(mode="json") for t in self.ledger.closed_trades()]

    def get_equity_series(self) -> List[Dict[str, Any]]:
        return [s.model_dump() for s in self.ledger.equity_series(self.clock())]

    def get_logs(self, limit: int = 200) -> List[Dict[str, Any]]:
        return self.ledger.logs(limit)

    def trade_stats(self) -> Dict[str, Any]:
        return self.ledger.trade_stats()

    def set_anchor(self, at: Optional[int], equity_usd: Optional[float], admin_key: Optional[str]) -> Dict[str, Any]:
        self._authorize(admin_key)
        if equity_usd is None:
            equity_usd = self.exchange.get_account().equity_usd
        return self.ledger.set_anchor(at if at is not None else self.clock(), equity_usd).model_dump()

    def close_all_positions(self, admin_key: Optional[str]) -> Dict[str, Any]:
        self._authorize(admin_key)
        with self._tick_lock:
            return {"ok": True, "results": _outcomes(self.lifecycle.close_all())}

    def close_stale_positions(self, min_minutes: float, admin_key: Optional[str]) -> Dict[str, Any]:
        self._authorize(admin_key)
        with self._tick_lock:
            return {"ok": True, "results": _outcomes(self.lifecycle.close_stale(min_minutes))}

    def oracle_test(self) -> Dict[str, Any]:
        cfg = load_config(self.ledger)
        snapshot = MarketSnapshot(
            timestamp=self.clock(),
            equity=1000.0,
            universe=list(cfg.universe),
            prices={s: None for s in cfg.universe},
        )
        decision = self._planner.decide(snapshot, cfg)
        return {"ok": decision.error is None, "decision": decision.model_dump(mode="json")}
