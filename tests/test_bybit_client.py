from __future__ import annotations

import asyncio
import hashlib
import hmac

import pytest

from bybit_client import BybitExchange, BybitRest, decimals_from_step
from exchange_ports import LONG, SHORT, ExchangeError, OrderRequest


class FakeRest:
    key = "key"
    secret = "secret"

    def __init__(self, gets=None, post_error=None):
        self.gets = gets or {}
        self.post_error = post_error
        self.calls = []

    def get(self, path, params=None, timeout=15, auth=True):
        self.calls.append(("GET", path, params))
        return self.gets[path]

    def post(self, path, body=None, timeout=15):
        self.calls.append(("POST", path, body))
        if self.post_error is not None:
            raise self.post_error
        return {"retCode": 0, "result": {"orderId": "o-1"}}


def _list(rows):
    return {"retCode": 0, "result": {"list": rows}}


@pytest.mark.parametrize("step,digits", [(0.001, 3), (0.5, 1), (1.0, 0), (10.0, 0), (0.0001, 4)])
def test_decimals_from_step(step, digits):
    assert decimals_from_step(step) == digits


def test_candles_are_sorted_oldest_first():
    rows = [
        ["120000", "3", "4", "2", "3.5", "10", "0"],
        ["60000", "2", "3", "1", "2.5", "11", "0"],
    ]
    ex = BybitExchange(FakeRest({"/v5/market/kline": _list(rows)}))
    candles = asyncio.run(ex.get_candles("BTCUSDT", 0, 180_000))
    assert [c.ts for c in candles] == [60_000, 120_000]
    assert candles[0].c == 2.5
    assert candles[0].v == 11.0


def test_symbol_info_and_qty_format():
    info_row = {"lotSizeFilter": {"qtyStep": "0.01", "minNotionalValue": "5"}, "priceFilter": {"tickSize": "0.10"}}
    rest = FakeRest({"/v5/market/instruments-info": _list([info_row])})
    ex = BybitExchange(rest)
    info = asyncio.run(ex.get_symbol_info("BTCUSDT"))
    assert info.price_precision == 1
    assert info.base_precision == 2
    assert info.min_notional == 5.0
    assert info.max_mkt_order_qty is None

    order_id = asyncio.run(ex.place_order(OrderRequest("BTCUSDT", "sell", 1.23456, "coid-1", reduce_only=True)))
    assert order_id == "o-1"
    body = rest.calls[-1][2]
    assert body["qty"] == "1.23"
    assert body["side"] == "Sell"
    assert body["reduceOnly"] is True
    assert body["orderLinkId"] == "coid-1"


def test_open_position_row():
    row = {
        "symbol": "BTCUSDT", "side": "Sell", "size": "0.5", "avgPrice": "100", "leverage": "10",
        "liqPrice": "", "positionValue": "50", "createdTime": "1700000000000", "updatedTime": "1700000001000",
    }
    ex = BybitExchange(FakeRest({"/v5/position/list": _list([{"size": "0"}, row])}))
    pos = asyncio.run(ex.get_position("BTCUSDT"))
    assert pos.side == SHORT
    assert pos.id == 1_700_000_000_000
    assert pos.liquidation_price is None
    assert pos.size == 0.5


def test_closed_pnl_rows_are_aggregated():
    pid = 1_700_000_000_000
    rows = [
        {"symbol": "BTCUSDT", "side": "Sell", "closedSize": "1", "cumEntryValue": "100", "cumExitValue": "102",
         "closedPnl": "1.9", "createdTime": str(pid + 10), "updatedTime": str(pid + 10), "execType": "Trade"},
        {"symbol": "BTCUSDT", "side": "Sell", "closedSize": "1", "cumEntryValue": "100", "cumExitValue": "104",
         "closedPnl": "3.9", "createdTime": str(pid + 20), "updatedTime": str(pid + 20), "execType": "BustTrade"},
        {"symbol": "BTCUSDT", "side": "Buy", "closedSize": "5", "createdTime": str(pid - 1)},
    ]
    ex = BybitExchange(FakeRest({"/v5/position/closed-pnl": _list(rows)}))
    closed = asyncio.run(ex.get_positions_history("BTCUSDT", position_id=pid))
    assert len(closed) == 1
    pos = closed[0]
    assert pos.id == pid
    assert pos.side == LONG
    assert pos.size == 2.0
    assert pos.avg_price == pytest.approx(100.0)
    assert pos.close_price == pytest.approx(103.0)
    assert pos.realized_pnl == pytest.approx(5.8)
    assert pos.is_liquidated is True
    assert pos.update_time == pid + 20


def test_no_closed_rows_means_empty_history():
    ex = BybitExchange(FakeRest({"/v5/position/closed-pnl": _list([])}))
    assert asyncio.run(ex.get_positions_history("BTCUSDT", position_id=5)) == []


def test_set_leverage_tolerates_not_modified():
    ex = BybitExchange(FakeRest(post_error=ExchangeError("Bybit POST error 110043: not modified", "110043")))
    assert asyncio.run(ex.set_leverage("BTCUSDT", 10)) is True
    ex = BybitExchange(FakeRest(post_error=ExchangeError("Bybit POST error 10001: params", "10001")))
    with pytest.raises(ExchangeError):
        asyncio.run(ex.set_leverage("BTCUSDT", 10))


def test_free_balance_excludes_margin():
    acc = {"coin": [{"coin": "USDT", "walletBalance": "1000", "totalPositionIM": "100", "totalOrderIM": "5", "locked": ""}]}
    ex = BybitExchange(FakeRest({"/v5/account/wallet-balance": _list([acc])}))
    [bal] = asyncio.run(ex.get_balances())
    assert bal.coin == "USDT"
    assert bal.free == pytest.approx(895.0)
    assert bal.frozen == pytest.approx(105.0)


def test_order_stream_rows_are_normalised():
    ex = BybitExchange(FakeRest())
    seen = []
    unhook = ex.hook_order_listener(seen.append)
    ex._emit_order({"orderId": "1", "orderLinkId": "c", "orderStatus": "Filled", "avgPrice": "101.5", "updatedTime": "7"})
    ex._emit_order({"orderId": "2", "orderLinkId": "d", "orderStatus": "Deactivated", "avgPrice": "0"})
    unhook()
    ex._emit_order({"orderId": "3", "orderLinkId": "e", "orderStatus": "Filled"})
    assert [(u.client_order_id, u.status, u.execution_price) for u in seen] == [
        ("c", "filled", 101.5),
        ("d", "canceled", None),
    ]


def test_price_listeners_are_per_symbol_and_isolated():
    ex = BybitExchange(FakeRest())
    seen = []

    def broken(price, ts):
        raise RuntimeError("listener bug")

    ex.hook_price_listener_with_timestamp("BTCUSDT", broken)
    ex.hook_price_listener("BTCUSDT", seen.append)
    ex.hook_price_listener("ETHUSDT", lambda p: seen.append(-p))
    ex._emit_price("BTCUSDT", 100.5, 1)
    assert seen == [100.5]


# --- rest ---

class _Resp:
    def __init__(self, payload):
        self.payload = payload

    def raise_for_status(self):
        pass

    def json(self):
        return self.payload


class _Session:
    def __init__(self, payload):
        self.payload = payload
        self.requests = []

    def get(self, url, headers=None, timeout=None):
        self.requests.append((url, headers))
        return _Resp(self.payload)


def test_rest_signs_sorted_query():
    session = _Session({"retCode": 0, "result": {}})
    rest = BybitRest("k", "s", "https://api.example/", session=session)
    rest.get("/v5/position/list", {"symbol": "BTCUSDT", "category": "linear"})
    url, headers = session.requests[0]
    assert url == "https://api.example/v5/position/list?category=linear&symbol=BTCUSDT"
    prehash = f"{headers['X-BAPI-TIMESTAMP']}k5000category=linear&symbol=BTCUSDT"
    assert headers["X-BAPI-SIGN"] == hmac.new(b"s", prehash.encode(), hashlib.sha256).hexdigest()


def test_rest_error_codes():
    rest = BybitRest("k", "s", "https://api.example", session=_Session({"retCode": 10003, "retMsg": "invalid key"}))
    with pytest.raises(ExchangeError, match="AUTH") as auth:
        rest.get("/v5/account/wallet-balance")
    assert auth.value.ret_code == "10003"

    rest = BybitRest("k", "s", "https://api.example", session=_Session({"retCode": 10006, "retMsg": "Too many visits"}))
    with pytest.raises(ExchangeError, match="error 10006"):
        rest.get("/v5/market/tickers", auth=False)
