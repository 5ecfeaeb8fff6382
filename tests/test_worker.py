import pytest

from autopilot.worker import AuthorizationError, AutopilotManager
from core.models import ClosedTrade
from execution.base import ExchangeError
from execution.types import PositionSide

from conftest import T0, ScriptedPlanner, long_plan, open_pos, short_plan


@pytest.fixture
def make_manager(ledger, exchange, settings, clock, sleeper):
    def make(*plans, raises=None, **overrides):
        planner = ScriptedPlanner(plans, raises=raises)
        s = settings
        if overrides:
            s = type(settings)(**{**settings.__dict__, **overrides})
        return AutopilotManager(ledger, exchange, s, planner=planner, clock=clock, sleep=sleeper)
    return make


def _types(ledger):
    return [e["type"] for e in reversed(ledger.logs())]


def test_stopped_tick_samples_equity_without_oracle(make_manager, ledger):
    m = make_manager(long_plan())
    out = m.tick()
    assert out["ok"] is True
    assert out["meta"]["status"] == "stopped"
    assert m._planner.calls == 0
    assert [(s.at, s.equity_usd) for s in ledger.equity_rolling()] == [(T0, 1000.0)]
    assert ledger.initial_equity().equity_usd == 1000.0
    assert ledger.runtime().last_tick_at == T0


def test_failing_oracle_still_samples_equity(make_manager, ledger, running_cfg):
    m = make_manager(raises=RuntimeError("boom"))
    out = m.tick()
    assert out == {"ok": False, "meta": out["meta"], "error": "boom"}
    assert ledger.runtime().last_error == "boom"
    assert len(ledger.equity_rolling()) == 1
    assert ledger.logs()[0]["type"] == "trader_error"


def test_concurrent_tick_is_skipped(make_manager, ledger, running_cfg):
    m = make_manager()
    m._tick_lock.acquire()
    try:
        assert m.tick() == {"ok": False, "skipped": "busy"}
    finally:
        m._tick_lock.release()
    assert ledger.equity_rolling() == []
    assert m._planner.calls == 0


def test_long_plan_opens_sized_position(make_manager, ledger, exchange, running_cfg):
    m = make_manager(long_plan(stop_loss_price=95.0, take_profit_price=110.0, min_hold_minutes=15))
    out = m.tick()
    assert out["ok"] is True
    assert out["size_usd"] == 500.0
    pos = ledger.open_positions()["BTCUSDT"]
    assert pos.qty == pytest.approx(5.0)
    assert pos.provider == "scripted"
    assert ledger.runtime().last_order_at == T0
    assert ledger.runtime().last_signal["action"] == "LONG"
    assert exchange.positions["BTCUSDT"]["qty"] == pytest.approx(5.0)
    assert _types(ledger) == ["trader_prompt", "trader_oracle_response", "trader_decision", "trader_order"]


def test_same_side_plan_is_skipped(make_manager, ledger, exchange, clock, running_cfg):
    m = make_manager(long_plan(), long_plan())
    m.tick()
    clock.advance(300)
    out = m.tick()
    assert out["skipped"] == "already_open"
    assert len(exchange.orders) == 1


def test_cooldown_blocks_second_open(make_manager, ledger, exchange, clock, running_cfg):
    m = make_manager(long_plan("BTCUSDT"), long_plan("ETHUSDT"))
    m.tick()
    clock.advance(60)
    out = m.tick()
    assert out["skipped"] == "order cooldown active"
    assert "ETHUSDT" not in ledger.open_positions()
    skip = ledger.logs()[0]
    assert skip["type"] == "trader_skip" and skip["symbol"] == "ETHUSDT"


def test_daily_loss_cap_blocks_open(make_manager, ledger, running_cfg):
    p = open_pos(opened_at=T0 - 120_000)
    ledger.append_closed(ClosedTrade(**p.model_dump(), exit_price=0.0, notional_exit=0.0, closed_at=T0 - 60_000,
                                     holding_ms=60_000, pnl_usd=-2500.0))
    out = make_manager(long_plan()).tick()
    assert out["skipped"].startswith("daily loss")
    assert ledger.open_positions() == {}


def test_opposite_plan_flips(make_manager, ledger, exchange, clock, running_cfg):
    m = make_manager(long_plan(), short_plan())
    m.tick()
    clock.advance(200)
    m.tick()
    [trade] = ledger.closed_trades()
    assert trade.side == PositionSide.long and trade.pnl_usd == pytest.approx(0.0)
    pos = ledger.open_positions()["BTCUSDT"]
    assert pos.side == PositionSide.short and pos.qty == pytest.approx(5.0)
    assert exchange.positions["BTCUSDT"]["qty"] == pytest.approx(-5.0)


def test_flat_plan_emits_status(make_manager, ledger, running_cfg):
    out = make_manager().tick()
    assert out["status"]["type"] == "trader_status"
    assert ledger.logs()[0]["type"] == "trader_status"
    assert out["decision"]["plan"]["action"] == "FLAT"


def test_stop_loss_runs_before_oracle(make_manager, ledger, exchange, running_cfg):
    ledger.upsert_open(open_pos(stop_loss=95.0))
    exchange.set_position("BTCUSDT", 2.0, 100.0)
    exchange.set_price("BTCUSDT", 94.0)
    out = make_manager().tick()
    assert out["meta"]["exits"][0]["status"] == "closed"
    assert ledger.closed_trades()[0].pnl_usd == pytest.approx(-12.0)


def test_run_and_stop_require_admin_key(make_manager, ledger):
    m = make_manager()
    with pytest.raises(AuthorizationError):
        m.run({}, None)
    with pytest.raises(AuthorizationError):
        m.run({}, "wrong")
    cfg = m.run({"leverage_cap": 3, "max_exposure_usd": None}, "secret")
    assert cfg.status == "running" and cfg.leverage_cap == 3
    assert ledger.config().status == "running"
    assert m.stop("secret").status == "stopped"
    assert ledger.config().leverage_cap == 3


def test_no_admin_key_configured_forbids_everything(make_manager):
    m = make_manager(admin_key=None)
    with pytest.raises(AuthorizationError):
        m.run({}, "secret")


def test_set_anchor_defaults_to_current_equity(make_manager, ledger):
    anchor = make_manager().set_anchor(None, None, "secret")
    assert anchor == {"at": T0, "equity_usd": 1000.0}
    assert ledger.anchor().equity_usd == 1000.0


def test_admin_close_all(make_manager, ledger, exchange):
    exchange.set_position("ETHUSDT", 5.0, 10.0)
    out = make_manager().close_all_positions("secret")
    assert out["ok"] is True
    assert out["results"][0]["trade"]["provider"] == "admin"
    assert exchange.positions == {}


def test_oracle_test_reports_decision(make_manager):
    out = make_manager(long_plan()).oracle_test()
    assert out["ok"] is True
    assert out["decision"]["plan"]["action"] == "LONG"


def test_stop_loss_enforced_when_account_read_fails(make_manager, ledger, exchange, running_cfg, monkeypatch):
    ledger.upsert_open(open_pos(stop_loss=95.0))
    exchange.set_position("BTCUSDT", 2.0, 100.0)
    exchange.set_price("BTCUSDT", 90.0)

    def broken_account():
        raise ExchangeError("account 503", status=503)

    monkeypatch.setattr(exchange, "get_account", broken_account)
    m = make_manager(long_plan())
    out = m.tick()

    assert out["ok"] is False and out["error"] == "account 503"
    assert out["meta"]["exits"][0]["status"] == "closed"
    assert ledger.closed_trades()[0].pnl_usd == pytest.approx(-20.0)
    assert ledger.open_positions() == {}
    assert m._planner.calls == 0
    assert ledger.equity_rolling() == []
    assert ledger.runtime().last_error == "account 503"
