# SQLite-backed key/value storage for the trader ledger, equity and activity log.

import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import (
    ClosedTrade,
    EquityAnchor,
    EquitySample,
    OpenPosition,
    RuntimeState,
    StatusRecord,
    TraderConfig,
)

log = logging.getLogger(__name__)

DB_PATH = os.getenv("TRADER_DB", "data/trader.db")

K_CONFIG = "config"
K_RUNTIME = "runtime"
K_OPEN = "open_trades"
K_CLOSED = "closed_trades"
K_EQUITY = "equity"
K_ANCHOR = "equity_anchor"
K_INITIAL = "initial_equity"
K_LOGS = "logs"
K_STATUS = "last_status"


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_day(at_ms: int) -> str:
    return datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def equity_day_key(at_ms: int) -> str:
    return f"{K_EQUITY}:{utc_day(at_ms)}"


class KVStore:
    """JSON documents in a single sqlite table, one connection shared across threads."""

    def __init__(self, path: Optional[str] = None):
        self.path = str(path or DB_PATH)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn as c:
            c.execute("""
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )""")

    def get_json(self, key: str, default: Any = None) -> Any:
        with self._lock:
            row = self._conn.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        if not row:
            return default
        return json.loads(row["value"])

    def put_json(self, key: str, value: Any) -> None:
        with self._lock, self._conn as c:
            c.execute(
                "INSERT INTO kv(key, value) VALUES(?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP",
                (key, json.dumps(value)),
            )

    def delete(self, key: str) -> None:
        with self._lock, self._conn as c:
            c.execute("DELETE FROM kv WHERE key=?", (key,))

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            cur = self._conn.execute("SELECT key FROM kv WHERE key LIKE ? ORDER BY key", (prefix + "%",))
            return [r["key"] for r in cur.fetchall()]

    def close(self) -> None:
        self._conn.close()


class TradeLedger:
    """
    Typed access to the persisted trader state.

    - open positions: whole-map read/modify/write keyed by symbol
    - closed trades: append-only ring, oldest evicted past ``closed_cap``
    - equity: rolling buffer (``equity_cap``) plus append-only UTC day partitions
    - logs: bounded activity log (``log_cap``)
    """

    def __init__(self, store: KVStore, closed_cap: int = 2000, equity_cap: int = 40320, log_cap: int = 500):
        self.store = store
        self.closed_cap = int(closed_cap)
        self.equity_cap = int(equity_cap)
        self.log_cap = int(log_cap)

    # ----- config / runtime -----

    def config(self) -> TraderConfig:
        raw = self.store.get_json(K_CONFIG)
        if raw is None:
            cfg = TraderConfig()
            self.store.put_json(K_CONFIG, cfg.model_dump(mode="json"))
            return cfg
        return TraderConfig.model_validate(raw)

    def put_config(self, cfg: TraderConfig) -> None:
        self.store.put_json(K_CONFIG, cfg.model_dump(mode="json"))

    def runtime(self) -> RuntimeState:
        return RuntimeState.model_validate(self.store.get_json(K_RUNTIME, {}))

    def put_runtime(self, rt: RuntimeState) -> None:
        self.store.put_json(K_RUNTIME, rt.model_dump(mode="json"))

    # ----- open positions -----

    def open_positions(self) -> Dict[str, OpenPosition]:
        raw = self.store.get_json(K_OPEN, {}) or {}
        return {sym: OpenPosition.model_validate(p) for sym, p in raw.items()}

    def put_open_positions(self, positions: Dict[str, OpenPosition]) -> None:
        self.store.put_json(K_OPEN, {sym: p.model_dump(mode="json") for sym, p in positions.items()})

    def upsert_open(self, pos: OpenPosition) -> None:
        m = self.open_positions()
        m[pos.symbol] = pos
        self.put_open_positions(m)

    def remove_open(self, symbol: str) -> Optional[OpenPosition]:
        m = self.open_positions()
        pos = m.pop(symbol, None)
        self.put_open_positions(m)
        return pos

    # ----- closed trades -----

    def closed_trades(self) -> List[ClosedTrade]:
        return [ClosedTrade.model_validate(t) for t in self.store.get_json(K_CLOSED, []) or []]

    def append_closed(self, trade: ClosedTrade) -> None:
        raw = self.store.get_json(K_CLOSED, []) or []
        raw.append(trade.model_dump(mode="json"))
        if len(raw) > self.closed_cap:
            raw = raw[-self.closed_cap:]
        self.store.put_json(K_CLOSED, raw)

    def realized_today(self, at_ms: Optional[int] = None) -> float:
        day = utc_day(at_ms if at_ms is not None else now_ms())
        return sum(t.pnl_usd for t in self.closed_trades() if utc_day(t.closed_at) == day)

    def trade_stats(self) -> Dict[str, Any]:
        trades = self.closed_trades()
        pnls = [t.pnl_usd for t in trades]
        if not pnls:
            return {"count": 0, "max": None, "min": None, "sum": 0.0, "avg": None, "top": []}
        top = sorted(trades, key=lambda t: t.pnl_usd, reverse=True)[:10]
        return {
            "count": len(pnls),
            "max": max(pnls),
            "min": min(pnls),
            "sum": sum(pnls),
            "avg": sum(pnls) / len(pnls),
            "top": [t.model_dump(mode="json") for t in top],
        }

    # ----- equity -----

    def equity_rolling(self) -> List[EquitySample]:
        return [EquitySample.model_validate(s) for s in self.store.get_json(K_EQUITY, []) or []]

    def sample_equity(self, at: int, equity_usd: float) -> EquitySample:
        rolling = self.store.get_json(K_EQUITY, []) or []
        if rolling and int(rolling[-1]["at"]) > at:
            at = int(rolling[-1]["at"])
        sample = EquitySample(at=at, equity_usd=float(equity_usd))
        rolling.append(sample.model_dump())
        if len(rolling) > self.equity_cap:
            rolling = rolling[-self.equity_cap:]
        self.store.put_json(K_EQUITY, rolling)

        day_key = equity_day_key(at)
        part = self.store.get_json(day_key, []) or []
        part.append(sample.model_dump())
        self.store.put_json(day_key, part)
        return sample

    def anchor(self) -> Optional[EquityAnchor]:
        raw = self.store.get_json(K_ANCHOR)
        return EquityAnchor.model_validate(raw) if raw else None

    def set_anchor(self, at: int, equity_usd: float) -> EquityAnchor:
        a = EquityAnchor(at=int(at), equity_usd=float(equity_usd))
        self.store.put_json(K_ANCHOR, a.model_dump())
        return a

    def equity_series(self, at_ms: Optional[int] = None) -> List[EquitySample]:
        a = self.anchor()
        if a is None:
            return self.equity_rolling()

        today = datetime.fromtimestamp((at_ms if at_ms is not None else now_ms()) / 1000, tz=timezone.utc).date()
        day = datetime.fromtimestamp(a.at / 1000, tz=timezone.utc).date()
        raw: List[Dict[str, Any]] = []
        while day <= today:
            raw.extend(self.store.get_json(f"{K_EQUITY}:{day.isoformat()}", []) or [])
            day += timedelta(days=1)
        raw.extend(self.store.get_json(K_EQUITY, []) or [])

        seen: Dict[int, EquitySample] = {}
        for s in raw:
            at = int(s["at"])
            if at < a.at or at in seen:
                continue
            seen[at] = EquitySample(at=at, equity_usd=float(s["equity_usd"]))
        if a.at not in seen:
            seen[a.at] = EquitySample(at=a.at, equity_usd=a.equity_usd)
        return [seen[k] for k in sorted(seen)]

    def initial_equity(self) -> Optional[EquitySample]:
        raw = self.store.get_json(K_INITIAL)
        return EquitySample.model_validate(raw) if raw else None

    def ensure_initial_equity(self, at: int, equity_usd: float) -> Optional[EquitySample]:
        cur = self.initial_equity()
        if cur is None and equity_usd > 0:
            cur = EquitySample(at=at, equity_usd=float(equity_usd))
            self.store.put_json(K_INITIAL, cur.model_dump())
        return cur

    # ----- activity log -----

    def append_log(self, entry_type: str, at: Optional[int] = None, **fields: Any) -> Dict[str, Any]:
        entry = {"at": at if at is not None else now_ms(), "type": entry_type}
        entry.update(fields)
        raw = self.store.get_json(K_LOGS, []) or []
        raw.append(entry)
        if len(raw) > self.log_cap:
            raw = raw[-self.log_cap:]
        self.store.put_json(K_LOGS, raw)
        return entry

    def logs(self, limit: int = 200) -> List[Dict[str, Any]]:
        raw = self.store.get_json(K_LOGS, []) or []
        return list(reversed(raw[-int(limit):]))

    # ----- narrator -----

    def last_status(self) -> Optional[StatusRecord]:
        raw = self.store.get_json(K_STATUS)
        return StatusRecord.model_validate(raw) if raw else None

    def put_last_status(self, rec: StatusRecord) -> None:
        self.store.put_json(K_STATUS, rec.model_dump())
