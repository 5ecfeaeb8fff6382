import pytest

from core.aster_client import parse_symbol_rules
from execution.gateway import OrderGateway, quantize, step_decimals
from execution.sim import PaperExchange
from execution.types import OrderResult, OrderSide


@pytest.mark.parametrize("qty,step,expected", [
    (0.12345, 0.001, 0.123),
    (0.0004, 0.001, 0.001),   # never below one step
    (2.7, 1.0, 2.0),
    (0.3, 0.1, 0.3),
    (0.0, 0.001, 0.0),
    (-1.0, 0.001, 0.0),
])
def test_quantize(qty, step, expected):
    assert quantize(qty, step) == pytest.approx(expected)


@pytest.mark.parametrize("step", [0.0001, 0.001, 0.01, 0.1, 1.0, 5.0])
def test_quantize_is_idempotent(step):
    for q in (0.00012, 0.0391, 0.3, 1.23456, 7.0, 19.99, 123.4567):
        once = quantize(q, step)
        assert quantize(once, step) == once


def test_step_decimals():
    assert step_decimals(0.0001) == 4
    assert step_decimals(0.001) == 3
    assert step_decimals(1.0) == 0
    assert step_decimals(10.0) == 0


class CountingExchange(PaperExchange):
    def __init__(self):
        super().__init__()
        self.rule_calls = 0

    def get_symbol_rules(self, symbol):
        self.rule_calls += 1
        return super().get_symbol_rules(symbol)


def test_rules_are_cached_per_gateway():
    ex = CountingExchange()
    gw = OrderGateway(ex)
    gw.rules("BTCUSDT")
    gw.rules("BTCUSDT")
    gw.quantize("BTCUSDT", 1.0)
    assert ex.rule_calls == 1


def test_size_order_bumps_to_min_notional():
    ex = PaperExchange()
    ex.set_rules("BTCUSDT", step_size=0.001, min_notional=5.0)
    gw = OrderGateway(ex)
    # 2 USD at 1000 -> 0.002, below 5 USD minimum -> 0.005
    assert gw.size_order("BTCUSDT", 2.0, 1000.0) == pytest.approx(0.005)
    # already above the minimum: untouched
    assert gw.size_order("BTCUSDT", 500.0, 1000.0) == pytest.approx(0.5)


def test_size_order_zero_for_bad_price():
    gw = OrderGateway(PaperExchange())
    assert gw.size_order("BTCUSDT", 100.0, 0.0) == 0.0


def test_submit_market_surfaces_exchange_result():
    ex = PaperExchange()
    ex.set_price("BTCUSDT", 100.0)
    gw = OrderGateway(ex)
    ok = gw.submit_market("BTCUSDT", OrderSide.buy, 1.0)
    assert ok.ok and ok.status == 200
    assert ok.avg_price == 100.0 and ok.executed_qty == 1.0

    ex.fail_orders = True
    bad = gw.submit_market("BTCUSDT", OrderSide.sell, 1.0, reduce_only=True)
    assert not bad.ok
    assert bad.status == 400
    assert bad.body["msg"] == "rejected"


def test_parse_symbol_rules_from_exchange_info():
    info = {"symbols": [
        {"symbol": "BTCUSDT", "filters": [
            {"filterType": "LOT_SIZE", "stepSize": "0.001"},
            {"filterType": "MIN_NOTIONAL", "notional": "5"},
        ]},
        {"symbol": "ETHUSDT", "filters": [
            {"filterType": "NOTIONAL", "minNotional": "20"},
        ]},
    ]}
    btc = parse_symbol_rules(info, "BTCUSDT")
    assert btc.step_size == 0.001 and btc.min_notional == 5.0
    eth = parse_symbol_rules(info, "ETHUSDT")
    assert eth.step_size == 0.0001 and eth.min_notional == 20.0
    missing = parse_symbol_rules(info, "DOGEUSDT")
    assert missing.step_size == 0.0001 and missing.min_notional is None


def test_filled_qty_falls_back_to_requested_qty():
    def result(executed):
        return OrderResult(ok=True, status=200, symbol="BTCUSDT", side=OrderSide.sell, qty=2.0, executed_qty=executed)

    assert result(0.5).filled_qty() == 0.5
    assert result(None).filled_qty() == 2.0
    assert result(0.0).filled_qty() == 2.0
