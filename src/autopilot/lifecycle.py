# src/autopilot/lifecycle.py
"""
Position lifecycle: FLAT -> OPEN -> CLOSING -> FLAT, driven by exchange truth.

Opens confirm the live position before recording it. Closes send reduce-only
MARKET orders for the live quantity until the exchange reports flat (bounded
by a RetryPolicy); only a confirmed flat with filled quantity produces a
ClosedTrade. Anything else leaves the OpenPosition in place for the next tick.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from core.models import ClosedTrade, OpenPosition, RuntimeState, TraderConfig
from core.storage import TradeLedger, now_ms
from execution.base import ExchangeError
from execution.gateway import OrderGateway
from execution.types import LivePosition, OrderResult, PositionSide, RetryPolicy, entry_side, exit_side
from risk.config import EngineSettings
from .schemas import DirectionalPlan

log = logging.getLogger(__name__)

Clock = Callable[[], int]
Sleep = Callable[[float], None]


def _direction(side: PositionSide) -> float:
    return 1.0 if side == PositionSide.long else -1.0


def unrealized_pnl(pos: OpenPosition, price: float) -> float:
    return (price - pos.entry_price) * pos.qty * _direction(pos.side)


def exit_reason(pos: OpenPosition, price: float, now: int, max_loss_usd: float = 0.0) -> Optional[str]:
    """
    Why ``pos`` should close at ``price``, or None to keep holding.

    Priority: stop-loss (ignores min hold), take-profit (only after min hold),
    hard dollar loss (ignores min hold).
    """
    is_long = pos.side == PositionSide.long
    if pos.stop_loss is not None:
        if (is_long and price <= pos.stop_loss) or (not is_long and price >= pos.stop_loss):
            return "stop_loss"
    held = now - pos.opened_at >= (pos.min_hold_ms or 0)
    if pos.take_profit is not None and held:
        if (is_long and price >= pos.take_profit) or (not is_long and price <= pos.take_profit):
            return "take_profit"
    cap = abs(float(max_loss_usd or 0))
    if cap > 0 and unrealized_pnl(pos, price) <= -cap:
        return "max_loss"
    return None


def split_netted_fill(fill_price: float, ref_price: float, closed_qty: float, opened_qty: float,
                      attribution: str = "closed_leg") -> Tuple[float, float]:
    """
    Split one reversing fill at ``fill_price`` into (exit price of the closed leg,
    entry price of the opened leg) so that total notional is conserved.

    ``closed_leg`` prices the opened leg at ``ref_price`` and puts the slippage on
    the closed leg; ``opened_leg`` does the reverse.
    """
    total = fill_price * (closed_qty + opened_qty)
    if attribution == "opened_leg" and opened_qty > 0:
        return ref_price, (total - ref_price * closed_qty) / opened_qty
    if closed_qty > 0:
        return (total - ref_price * opened_qty) / closed_qty, ref_price
    return ref_price, fill_price


@dataclass
class CloseOutcome:
    status: str  # closed | orphaned | failed
    trade: Optional[ClosedTrade] = None
    orders: int = 0


class PositionLifecycle:
    def __init__(self, ledger: TradeLedger, gateway: OrderGateway, settings: EngineSettings,
                 clock: Clock = now_ms, sleep: Sleep = time.sleep):
        self.ledger = ledger
        self.gateway = gateway
        self.exchange = gateway.exchange
        self.settings = settings
        self.clock = clock
        self.sleep = sleep
        self.close_policy = RetryPolicy(max_attempts=settings.close_max_attempts,
                                        delay_sec=settings.close_retry_delay_sec)

    # ---------------- helpers ----------------

    def _log_order(self, res: OrderResult, **extra) -> None:
        if res.ok:
            self.ledger.append_log("trader_order", at=self.clock(), symbol=res.symbol, side=res.side.value,
                                   qty=res.qty, reduce_only=res.reduce_only, avg_price=res.avg_price,
                                   executed_qty=res.executed_qty, **extra)
        else:
            self.ledger.append_log("trader_order_error", at=self.clock(), symbol=res.symbol, side=res.side.value,
                                   qty=res.qty, reduce_only=res.reduce_only, status=res.status,
                                   body=res.body, **extra)

    def _live(self, symbol: str) -> Optional[LivePosition]:
        live = self.exchange.get_position(symbol)
        if live is None or live.is_flat:
            return None
        return live

    def _record_close(self, pos: OpenPosition, entry_price: float, exit_price: float, qty: float,
                      reason: str) -> ClosedTrade:
        closed_at = self.clock()
        pnl = (exit_price - entry_price) * qty * _direction(pos.side)
        trade = ClosedTrade(
            **pos.model_dump(exclude={"qty", "entry_price", "notional_entry"}),
            qty=qty,
            entry_price=entry_price,
            notional_entry=entry_price * qty,
            exit_price=exit_price,
            notional_exit=exit_price * qty,
            closed_at=closed_at,
            holding_ms=max(0, closed_at - pos.opened_at),
            pnl_usd=pnl,
        )
        self.ledger.append_closed(trade)
        self.ledger.remove_open(pos.symbol)
        self.ledger.append_log("trader_exit", at=closed_at, symbol=pos.symbol, side=pos.side.value,
                               reason=reason, qty=qty, entry_price=entry_price, exit_price=exit_price,
                               pnl_usd=pnl)
        log.info("closed %s %s qty=%s entry=%s exit=%s pnl=%.2f (%s)",
                 pos.symbol, pos.side.value, qty, entry_price, exit_price, pnl, reason)
        return trade

    # ---------------- closing ----------------

    def close_to_flat(self, pos: OpenPosition, reason: str) -> CloseOutcome:
        """
        Reduce the live position on ``pos.symbol`` to zero.

        ExchangeError while reading or ordering propagates with the ledger untouched.
        """
        policy = self.close_policy
        closed_qty = 0.0
        notional = 0.0
        orders = 0
        entry_ref: Optional[float] = None

        for attempt in range(policy.max_attempts):
            live = self._live(pos.symbol)
            if live is None:
                if attempt == 0:
                    self.ledger.remove_open(pos.symbol)
                    self.ledger.append_log("trader_exit", at=self.clock(), symbol=pos.symbol,
                                           side=pos.side.value, reason="orphaned", trigger=reason)
                    log.warning("%s already flat on exchange; dropping tracked position", pos.symbol)
                    return CloseOutcome(status="orphaned")
                break
            if entry_ref is None and live.entry_price > 0:
                entry_ref = live.entry_price
            qty = self.gateway.quantize(pos.symbol, abs(live.position_amt))
            side = exit_side(live.side)
            ref_price = live.mark_price if live.mark_price > 0 else self.exchange.get_price(pos.symbol)
            res = self.gateway.submit_market(pos.symbol, side, qty, reduce_only=True)
            orders += 1
            self._log_order(res, reason=reason, attempt=attempt + 1)
            if res.ok:
                filled = res.filled_qty()
                closed_qty += filled
                notional += filled * res.fill_price(ref_price)
            self.sleep(policy.delay_sec)

        if self._live(pos.symbol) is None and closed_qty > 0:
            exit_price = notional / closed_qty
            entry_price = entry_ref if entry_ref else pos.entry_price
            trade = self._record_close(pos, entry_price, exit_price, closed_qty, reason)
            return CloseOutcome(status="closed", trade=trade, orders=orders)

        self.ledger.append_log("trader_error", at=self.clock(), symbol=pos.symbol,
                               error=f"close not confirmed after {orders} orders", reason=reason)
        log.error("close of %s not confirmed after %d orders; keeping position", pos.symbol, orders)
        return CloseOutcome(status="failed", orders=orders)

    def enforce_exits(self, cfg: TraderConfig) -> List[CloseOutcome]:
        """Check every tracked position against SL/TP/max-loss and close the ones that trip."""
        out: List[CloseOutcome] = []
        for sym, pos in self.ledger.open_positions().items():
            try:
                price = self.exchange.get_price(sym)
                if price <= 0:
                    continue
                reason = exit_reason(pos, price, self.clock(), cfg.max_loss_per_trade_usd)
                if reason is None:
                    continue
                out.append(self.close_to_flat(pos, reason))
            except ExchangeError as e:
                self.ledger.append_log("trader_error", at=self.clock(), symbol=sym, error=str(e), stage="exit")
                log.warning("exit check for %s failed: %s", sym, e)
        return out

    # ---------------- opening ----------------

    def _confirm_open(self, symbol: str, side: PositionSide) -> Optional[LivePosition]:
        for attempt in range(max(1, self.settings.open_confirm_attempts)):
            live = self._live(symbol)
            if live is not None and live.side == side:
                return live
            if attempt + 1 < self.settings.open_confirm_attempts:
                self.sleep(self.close_policy.delay_sec)
        return None

    def _new_position(self, plan: DirectionalPlan, qty: float, entry_price: float, provider: str,
                      model: str) -> OpenPosition:
        minutes = plan.min_hold_minutes
        return OpenPosition(
            symbol=plan.symbol,
            side=PositionSide(plan.action),
            qty=qty,
            entry_price=entry_price,
            notional_entry=qty * entry_price,
            opened_at=self.clock(),
            stop_loss=plan.stop_loss_price,
            take_profit=plan.take_profit_price,
            min_hold_ms=int(minutes * 60_000) if minutes is not None else None,
            thesis=plan.thesis,
            provider=provider,
            model=model,
        )

    def open_position(self, plan: DirectionalPlan, size_usd: float, price: float, runtime: RuntimeState,
                      provider: str, model: str) -> Optional[OpenPosition]:
        """Send the opening order and record the confirmed position. None if the order failed."""
        side = PositionSide(plan.action)
        qty = self.gateway.size_order(plan.symbol, size_usd, price)
        if qty <= 0:
            raise ValueError(f"order size for {plan.symbol} rounds to zero")
        res = self.gateway.submit_market(plan.symbol, entry_side(side), qty)
        self._log_order(res, reason="open")
        if not res.ok:
            return None
        runtime.last_order_at = self.clock()

        live = self._confirm_open(plan.symbol, side)
        if live is not None:
            qty = abs(live.position_amt)
        else:
            qty = res.filled_qty()
            log.warning("open of %s not visible on exchange yet; recording order quantity", plan.symbol)
        entry = res.avg_price or (live.entry_price if live and live.entry_price > 0 else None) or price
        pos = self._new_position(plan, qty, float(entry), provider, model)
        self.ledger.upsert_open(pos)
        return pos

    def flip(self, current: OpenPosition, plan: DirectionalPlan, size_usd: float, price: float,
             runtime: RuntimeState, provider: str, model: str) -> Optional[OpenPosition]:
        if self.settings.flip_mode == "netted":
            return self._flip_netted(current, plan, size_usd, price, runtime, provider, model)
        outcome = self.close_to_flat(current, "flip")
        if outcome.status == "failed":
            self.ledger.append_log("trader_skip", at=self.clock(), symbol=plan.symbol, reason="flip_close_failed")
            return None
        return self.open_position(plan, size_usd, price, runtime, provider, model)

    def _flip_netted(self, current: OpenPosition, plan: DirectionalPlan, size_usd: float, price: float,
                     runtime: RuntimeState, provider: str, model: str) -> Optional[OpenPosition]:
        live = self._live(current.symbol)
        if live is None:
            # nothing to reverse; plain open
            self.ledger.remove_open(current.symbol)
            return self.open_position(plan, size_usd, price, runtime, provider, model)
        new_side = PositionSide(plan.action)
        qc = self.gateway.quantize(current.symbol, abs(live.position_amt))
        qo = self.gateway.size_order(plan.symbol, size_usd, price)
        if qo <= 0:
            raise ValueError(f"order size for {plan.symbol} rounds to zero")
        total = self.gateway.quantize(plan.symbol, qc + qo)
        res = self.gateway.submit_market(plan.symbol, entry_side(new_side), total)
        self._log_order(res, reason="flip_netted")
        if not res.ok:
            return None
        runtime.last_order_at = self.clock()

        filled = res.filled_qty()
        fill_price = res.fill_price(price)
        closed = min(filled, qc)
        opened = max(0.0, filled - qc)
        exit_px, entry_px = split_netted_fill(fill_price, price, closed, opened, self.settings.slippage_attribution)
        entry_ref = live.entry_price if live.entry_price > 0 else current.entry_price

        if closed > 0:
            self._record_close(current, entry_ref, exit_px, closed, "flip")
        if closed < qc:
            # partial reversal: the remainder of the old position stays tracked
            rest = current.model_copy(update={"qty": qc - closed, "notional_entry": (qc - closed) * current.entry_price})
            self.ledger.upsert_open(rest)
            return None
        if opened <= 0:
            return None
        confirmed = self._confirm_open(plan.symbol, new_side)
        qty = abs(confirmed.position_amt) if confirmed is not None else opened
        pos = self._new_position(plan, qty, entry_px, provider, model)
        self.ledger.upsert_open(pos)
        return pos

    # ---------------- admin ----------------

    def close_all(self) -> List[CloseOutcome]:
        """Close every live exchange position; untracked ones are recorded with provider 'admin'."""
        tracked = self.ledger.open_positions()
        out: List[CloseOutcome] = []
        for live in self.exchange.get_positions():
            if live.is_flat:
                continue
            pos = tracked.get(live.symbol)
            if pos is None:
                side = live.side or PositionSide.long
                qty = abs(live.position_amt)
                entry = live.entry_price if live.entry_price > 0 else live.mark_price
                pos = OpenPosition(symbol=live.symbol, side=side, qty=qty, entry_price=entry,
                                   notional_entry=qty * entry, opened_at=self.clock(), provider="admin",
                                   model="admin")
            out.append(self.close_to_flat(pos, "admin_close_all"))
        return out

    def close_stale(self, min_minutes: float) -> List[CloseOutcome]:
        now = self.clock()
        cutoff_ms = float(min_minutes) * 60_000
        out: List[CloseOutcome] = []
        for pos in self.ledger.open_positions().values():
            if now - pos.opened_at >= cutoff_ms:
                out.append(self.close_to_flat(pos, "stale"))
        return out
