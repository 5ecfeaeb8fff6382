from core.models import ClosedTrade, TraderConfig
from core.storage import KVStore, TradeLedger, utc_day

from conftest import T0, open_pos

DAY_MS = 86_400_000


def _closed(pnl: float, closed_at: int = T0, symbol: str = "BTCUSDT") -> ClosedTrade:
    p = open_pos(symbol, opened_at=closed_at - 60_000)
    return ClosedTrade(**p.model_dump(), exit_price=100.0, notional_exit=200.0, closed_at=closed_at,
                       holding_ms=60_000, pnl_usd=pnl)


def test_kvstore_roundtrip_in_memory():
    store = KVStore(":memory:")
    store.put_json("a", {"x": 1})
    store.put_json("a", {"x": 2})
    store.put_json("equity:2025-01-01", [])
    assert store.get_json("a") == {"x": 2}
    assert store.get_json("missing", "dflt") == "dflt"
    assert store.keys("equity:") == ["equity:2025-01-01"]
    store.delete("a")
    assert store.get_json("a") is None
    store.close()


def test_config_defaults_to_stopped_and_persists(ledger):
    cfg = ledger.config()
    assert cfg.status == "stopped"
    assert ledger.store.get_json("config")["status"] == "stopped"
    ledger.put_config(TraderConfig(status="running", universe=["BTCUSDT"]))
    assert ledger.config().universe == ["BTCUSDT"]


def test_open_positions_one_per_symbol(ledger):
    ledger.upsert_open(open_pos("BTCUSDT", qty=1.0))
    ledger.upsert_open(open_pos("BTCUSDT", qty=3.0))
    ledger.upsert_open(open_pos("ETHUSDT"))
    assert ledger.open_positions()["BTCUSDT"].qty == 3.0
    assert ledger.remove_open("ETHUSDT").symbol == "ETHUSDT"
    assert ledger.remove_open("ETHUSDT") is None
    assert list(ledger.open_positions()) == ["BTCUSDT"]


def test_closed_trades_evict_oldest():
    ledger = TradeLedger(KVStore(":memory:"), closed_cap=3)
    for i in range(5):
        ledger.append_closed(_closed(float(i)))
    assert [t.pnl_usd for t in ledger.closed_trades()] == [2.0, 3.0, 4.0]


def test_logs_are_capped_and_newest_first():
    ledger = TradeLedger(KVStore(":memory:"), log_cap=3)
    for i in range(5):
        ledger.append_log("trader_skip", at=T0 + i, n=i)
    logs = ledger.logs()
    assert [e["n"] for e in logs] == [4, 3, 2]
    assert logs[0]["type"] == "trader_skip" and logs[0]["at"] == T0 + 4
    assert [e["n"] for e in ledger.logs(limit=1)] == [4]


def test_equity_samples_never_go_backwards(ledger):
    ledger.sample_equity(T0 + 100, 1000.0)
    s = ledger.sample_equity(T0 + 50, 1001.0)
    assert s.at == T0 + 100
    assert [x.at for x in ledger.equity_rolling()] == [T0 + 100, T0 + 100]
    assert len(ledger.store.get_json(f"equity:{utc_day(T0)}")) == 2


def test_equity_rolling_is_capped():
    ledger = TradeLedger(KVStore(":memory:"), equity_cap=2)
    for i in range(4):
        ledger.sample_equity(T0 + i, 1000.0 + i)
    assert [x.equity_usd for x in ledger.equity_rolling()] == [1002.0, 1003.0]


def test_equity_series_without_anchor_is_rolling_buffer(ledger):
    ledger.sample_equity(T0, 1000.0)
    ledger.sample_equity(T0 + 60_000, 1010.0)
    assert [s.equity_usd for s in ledger.equity_series(T0 + 60_000)] == [1000.0, 1010.0]


def test_equity_series_starts_at_anchor_and_dedups(ledger):
    ledger.sample_equity(T0, 900.0)
    ledger.sample_equity(T0 + 20, 1020.0)
    ledger.sample_equity(T0 + 30, 1030.0)
    ledger.set_anchor(T0 + 10, 1000.0)

    series = ledger.equity_series(T0 + 30)

    assert [(s.at, s.equity_usd) for s in series] == [
        (T0 + 10, 1000.0), (T0 + 20, 1020.0), (T0 + 30, 1030.0)]


def test_equity_series_keeps_sample_when_anchor_coincides(ledger):
    ledger.sample_equity(T0, 950.0)
    ledger.set_anchor(T0, 1.0)
    assert [(s.at, s.equity_usd) for s in ledger.equity_series(T0)] == [(T0, 950.0)]


def test_equity_series_reads_day_partitions_past_rolling_cap():
    ledger = TradeLedger(KVStore(":memory:"), equity_cap=1)
    ledger.sample_equity(T0 - DAY_MS, 900.0)
    ledger.sample_equity(T0, 1000.0)
    ledger.set_anchor(T0 - DAY_MS, 900.0)
    assert [s.equity_usd for s in ledger.equity_series(T0)] == [900.0, 1000.0]


def test_initial_equity_is_set_once(ledger):
    assert ledger.ensure_initial_equity(T0, 0.0) is None
    ledger.ensure_initial_equity(T0, 1000.0)
    ledger.ensure_initial_equity(T0 + 1, 2000.0)
    assert ledger.initial_equity().equity_usd == 1000.0


def test_realized_today_counts_only_current_utc_day(ledger):
    ledger.append_closed(_closed(-50.0, T0))
    ledger.append_closed(_closed(20.0, T0 + 1))
    ledger.append_closed(_closed(-500.0, T0 - 2 * DAY_MS))
    assert ledger.realized_today(T0) == -30.0


def test_trade_stats(ledger):
    assert ledger.trade_stats()["count"] == 0
    for pnl in (5.0, -3.0, 10.0):
        ledger.append_closed(_closed(pnl))
    stats = ledger.trade_stats()
    assert stats["count"] == 3
    assert stats["max"] == 10.0 and stats["min"] == -3.0
    assert stats["sum"] == 12.0 and stats["avg"] == 4.0
    assert [t["pnl_usd"] for t in stats["top"]] == [10.0, 5.0, -3.0]
