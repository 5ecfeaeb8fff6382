import asyncio

import pytest
from fastapi.testclient import TestClient

from autopilot.worker import AutopilotManager
from core.scheduler import TickScheduler
from execution.container import get_exchange, get_manager
from server import app

from conftest import ScriptedPlanner, long_plan

ADMIN = {"x-admin-key": "secret"}


@pytest.fixture
def manager(ledger, exchange, settings, clock, sleeper):
    return AutopilotManager(ledger, exchange, settings, planner=ScriptedPlanner([long_plan()]),
                            clock=clock, sleep=sleeper)


@pytest.fixture
def client(manager, exchange):
    app.dependency_overrides[get_manager] = lambda: manager
    app.dependency_overrides[get_exchange] = lambda: exchange
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/").json() == {"status": "ok"}


def test_admin_routes_are_forbidden_without_key(client):
    for path in ("/api/trader/run", "/api/trader/stop", "/api/trader/anchor",
                 "/api/exchange/close-all", "/api/exchange/close-stale"):
        r = client.post(path, headers={"x-admin-key": "nope"})
        assert r.status_code == 403, path
        assert r.json() == {"ok": False, "error": "forbidden"}


def test_run_tick_and_read_back(client, exchange):
    r = client.post("/api/trader/run", json={"universe": ["BTCUSDT"], "leverage_cap": 3}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["config"]["status"] == "running"
    assert r.json()["config"]["universe"] == ["BTCUSDT"]

    tick = client.post("/api/trader/tick").json()
    assert tick["ok"] is True

    status = client.get("/api/trader/status").json()
    assert status["config"]["leverage_cap"] == 3
    assert status["runtime"]["last_provider"] == "scripted"
    assert status["scheduler"] == {"running": False}

    [pos] = client.get("/api/trader/open-trades").json()["open"]
    assert pos["symbol"] == "BTCUSDT" and pos["side"] == "LONG"
    assert client.get("/api/trader/trades").json() == {"trades": []}
    assert client.get("/api/trader/trades/stats").json()["count"] == 0
    assert len(client.get("/api/trader/equity").json()["series"]) == 1

    logs = client.get("/api/trader/logs", params={"limit": 2}).json()["logs"]
    assert [e["type"] for e in logs] == ["trader_order", "trader_decision"]

    positions = client.get("/api/exchange/positions").json()
    assert positions[0]["symbol"] == "BTCUSDT"


def test_stop(client):
    client.post("/api/trader/run", headers=ADMIN)
    assert client.post("/api/trader/stop", headers=ADMIN).json()["config"]["status"] == "stopped"


def test_anchor(client):
    r = client.post("/api/trader/anchor", json={"at": 123, "equity_usd": 900}, headers=ADMIN)
    assert r.json() == {"ok": True, "anchor": {"at": 123, "equity_usd": 900.0}}


def test_balances_and_prices(client):
    bal = client.get("/api/exchange/balances").json()
    assert bal["wallet_balance"] == 1000.0
    assert bal["equity_usd"] == 1000.0
    prices = client.get("/api/exchange/prices", params={"symbols": "BTCUSDT,SOLUSDT"}).json()
    assert prices == {"prices": {"BTCUSDT": 100.0, "SOLUSDT": None}}


def test_admin_close_all_route(client, exchange):
    exchange.set_position("BTCUSDT", 1.0, 90.0)
    r = client.post("/api/exchange/close-all", headers=ADMIN).json()
    assert r["ok"] is True
    assert r["results"][0]["trade"]["pnl_usd"] == pytest.approx(10.0)


def test_oracle_test_route(client):
    assert client.get("/api/trader/oracle-test").json()["ok"] is True


def test_scheduler_keeps_ticking_after_errors():
    calls = []

    def tick():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first tick fails")
        return {"ok": True}

    async def scenario():
        s = TickScheduler(tick, interval_sec=0.01)
        s.start()
        assert s.running
        for _ in range(200):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        await s.stop()
        return s

    s = asyncio.run(scenario())
    assert len(calls) >= 3
    assert s.last_result == {"ok": True}
    assert not s.running
