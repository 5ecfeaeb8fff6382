from typing import List, Optional

import pytest

from autopilot.schemas import DirectionalPlan, OracleDecision, flat_plan
from core.models import OpenPosition, TraderConfig
from core.storage import KVStore, TradeLedger
from execution.sim import PaperExchange
from execution.types import Candle, PositionSide
from risk.config import EngineSettings

T0 = 1_760_000_000_000  # fixed epoch ms for deterministic clocks


class FakeClock:
    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, sec: float) -> None:
        self.calls.append(sec)


class ScriptedPlanner:
    """Returns queued decisions in order, then FLAT. Can be told to raise."""

    provider = "scripted"

    def __init__(self, plans=None, raises: Optional[Exception] = None):
        self.plans = list(plans or [])
        self.raises = raises
        self.calls = 0

    def decide(self, snapshot, cfg):
        self.calls += 1
        if self.raises is not None:
            raise self.raises
        plan = self.plans.pop(0) if self.plans else flat_plan()
        return OracleDecision(plan=plan, provider=self.provider, model=cfg.model)


def make_candles(n: int = 30, price: float = 100.0, spread: float = 1.0, volume: float = 10.0) -> List[Candle]:
    return [
        Candle(open_time=T0 + i * 60_000, open=price, high=price + spread, low=price - spread,
               close=price, volume=volume)
        for i in range(n)
    ]


def long_plan(symbol: str = "BTCUSDT", **kw) -> DirectionalPlan:
    return DirectionalPlan(action="LONG", symbol=symbol, **kw)


def short_plan(symbol: str = "BTCUSDT", **kw) -> DirectionalPlan:
    return DirectionalPlan(action="SHORT", symbol=symbol, **kw)


def open_pos(symbol: str = "BTCUSDT", side: PositionSide = PositionSide.long, qty: float = 2.0,
             entry: float = 100.0, opened_at: int = T0, **kw) -> OpenPosition:
    return OpenPosition(symbol=symbol, side=side, qty=qty, entry_price=entry, notional_entry=qty * entry,
                        opened_at=opened_at, **kw)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(db_path=":memory:", close_retry_delay_sec=0.0, admin_key="secret",
                          scheduler_enabled=False, exchange_mode="paper")


@pytest.fixture
def ledger(tmp_path) -> TradeLedger:
    store = KVStore(str(tmp_path / "trader.db"))
    yield TradeLedger(store)
    store.close()


@pytest.fixture
def exchange() -> PaperExchange:
    ex = PaperExchange(wallet_balance=1000.0)
    ex.set_price("BTCUSDT", 100.0)
    ex.set_price("ETHUSDT", 10.0)
    ex.klines["BTCUSDT"] = make_candles(30, 100.0)
    ex.klines["ETHUSDT"] = make_candles(30, 10.0, spread=0.1)
    return ex


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def running_cfg(ledger) -> TraderConfig:
    cfg = TraderConfig(status="running", universe=["BTCUSDT", "ETHUSDT"])
    ledger.put_config(cfg)
    return cfg
