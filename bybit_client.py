#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Bybit v5 (linear perpetuals) adapter: MarketDataPort + TradingPort.

REST calls are plain `requests` with HMAC headers, run in a worker thread so
the event loop never blocks. Live data comes from two websocket streams:
public trades (price listeners) and the private order topic (order listeners).

Position ids are the position's createdTime in ms. A closed position is
looked up in /v5/position/closed-pnl by rows created at or after that id.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import itertools
import json
import random
import time
import traceback
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests
import websockets
from websockets.exceptions import InvalidStatus

from bot_log import log, log_error
from exchange_ports import (
    LONG,
    SHORT,
    BalanceInfo,
    Candle,
    ExchangeError,
    OrderRequest,
    OrderUpdate,
    Position,
    SymbolInfo,
    Unhook,
)

PUBLIC_WS = "wss://stream.bybit.com/v5/public/linear"
PRIVATE_WS = "wss://stream.bybit.com/v5/private"
RECV_WINDOW = "5000"
LEVERAGE_NOT_MODIFIED = "110043"
AUTH_CODES = ("33004", "10002", "10003", "10004", "10005")

# Bybit orderStatus -> normalised status
ORDER_STATUS_MAP = {
    "Filled": "filled",
    "Cancelled": "canceled",
    "Deactivated": "canceled",
    "PartiallyFilledCanceled": "partially_filled_canceled",
    "Rejected": "rejected",
}


def decimals_from_step(step: float) -> int:
    s = f"{step:.10f}".rstrip("0").rstrip(".")
    if "." in s:
        return len(s.split(".")[1])
    return 0


def _f(v, default: float = 0.0) -> float:
    try:
        if v in (None, ""):
            return default
        return float(v)
    except (TypeError, ValueError):
        return default


class BybitRest:
    def __init__(self, key: str, secret: str, base: str, session: Optional[requests.Session] = None):
        self.key = key
        self.secret = secret
        self.base = base.rstrip("/")
        self.session = session or requests.Session()

    def _ts(self) -> str:
        return str(int(time.time() * 1000))

    def _sign(self, prehash: str) -> str:
        return hmac.new(self.secret.encode(), prehash.encode(), hashlib.sha256).hexdigest()

    def _headers(self, ts: str, payload: str) -> dict:
        prehash = f"{ts}{self.key}{RECV_WINDOW}{payload}"
        return {
            "X-BAPI-API-KEY": self.key,
            "X-BAPI-SIGN": self._sign(prehash),
            "X-BAPI-TIMESTAMP": ts,
            "X-BAPI-RECV-WINDOW": RECV_WINDOW,
            "Content-Type": "application/json",
        }

    def _check(self, j: dict, what: str) -> dict:
        rc = str(j.get("retCode"))
        if rc != "0":
            log_error(f"[bybit] {what} failed. Resp={j}")
            msg = str(j.get("retMsg") or "")
            if rc in AUTH_CODES:
                raise ExchangeError(f"Bybit AUTH error: {msg}", rc)
            raise ExchangeError(f"Bybit {what} error {rc}: {msg}", rc)
        return j

    def get(self, path: str, params: Optional[dict] = None, timeout: int = 15, auth: bool = True) -> dict:
        params = params or {}
        qs = urlencode(sorted(params.items()))
        headers = self._headers(self._ts(), qs) if auth else {}
        url = f"{self.base}{path}"
        if qs:
            url += f"?{qs}"
        r = self.session.get(url, headers=headers, timeout=timeout)
        r.raise_for_status()
        return self._check(r.json(), f"GET {path}")

    def post(self, path: str, body: Optional[dict] = None, timeout: int = 15) -> dict:
        js = json.dumps(body or {}, separators=(",", ":"))
        r = self.session.post(f"{self.base}{path}", headers=self._headers(self._ts(), js), data=js, timeout=timeout)
        r.raise_for_status()
        return self._check(r.json(), f"POST {path}")


def _rows(j: dict) -> list:
    return (((j or {}).get("result") or {}).get("list") or [])


class BybitExchange:
    def __init__(
        self,
        rest: BybitRest,
        *,
        public_ws: str = PUBLIC_WS,
        private_ws: str = PRIVATE_WS,
    ):
        self.rest = rest
        self.public_ws = public_ws
        self.private_ws = private_ws
        self._qty_step: Dict[str, float] = {}
        self._seq = itertools.count(1)
        self._price_cbs: Dict[str, Dict[int, Callable[[float, int], None]]] = {}
        self._order_cbs: Dict[int, Callable[[OrderUpdate], None]] = {}

    async def _get(self, path: str, params: dict, auth: bool = True) -> dict:
        return await asyncio.to_thread(self.rest.get, path, params, 15, auth)

    async def _post(self, path: str, body: dict) -> dict:
        return await asyncio.to_thread(self.rest.post, path, body)

    # --- market data ---
    async def get_candles(self, symbol: str, start_ms: int, end_ms: int, resolution: str = "1") -> List[Candle]:
        j = await self._get(
            "/v5/market/kline",
            {"category": "linear", "symbol": symbol, "interval": resolution, "start": int(start_ms), "end": int(end_ms), "limit": 1000},
            auth=False,
        )
        out = []
        for r in _rows(j):
            # [startTime, open, high, low, close, volume, turnover], newest first
            out.append(Candle(ts=int(r[0]), o=float(r[1]), h=float(r[2]), l=float(r[3]), c=float(r[4]), v=float(r[5])))
        out.sort(key=lambda c: c.ts)
        return out

    async def get_mark_price(self, symbol: str) -> float:
        j = await self._get("/v5/market/tickers", {"category": "linear", "symbol": symbol}, auth=False)
        rows = _rows(j)
        if not rows:
            raise ExchangeError(f"no ticker for {symbol}")
        return float(rows[0]["markPrice"])

    def hook_price_listener(self, symbol: str, cb: Callable[[float], None]) -> Unhook:
        return self.hook_price_listener_with_timestamp(symbol, lambda price, ts: cb(price))

    def hook_price_listener_with_timestamp(self, symbol: str, cb: Callable[[float, int], None]) -> Unhook:
        key = next(self._seq)
        store = self._price_cbs.setdefault(symbol, {})
        store[key] = cb

        def _unhook() -> None:
            store.pop(key, None)

        return _unhook

    def hook_order_listener(self, cb: Callable[[OrderUpdate], None]) -> Unhook:
        key = next(self._seq)
        self._order_cbs[key] = cb

        def _unhook() -> None:
            self._order_cbs.pop(key, None)

        return _unhook

    # --- trading ---
    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        j = await self._get("/v5/market/instruments-info", {"category": "linear", "symbol": symbol}, auth=False)
        rows = _rows(j)
        if not rows:
            raise ExchangeError(f"unknown symbol {symbol}")
        lot = rows[0].get("lotSizeFilter") or {}
        pf = rows[0].get("priceFilter") or {}
        qty_step = _f(lot.get("qtyStep"), 0.001)
        self._qty_step[symbol] = qty_step
        return SymbolInfo(
            price_precision=decimals_from_step(_f(pf.get("tickSize"), 0.01)),
            base_precision=decimals_from_step(qty_step),
            quote_precision=2,
            min_notional=_f(lot.get("minNotionalValue"), 0.0) or None,
            max_mkt_order_qty=_f(lot.get("maxMktOrderQty"), 0.0) or None,
        )

    def _fmt_qty(self, symbol: str, qty: float) -> str:
        step = self._qty_step.get(symbol, 0.001)
        return f"{qty:.{decimals_from_step(step)}f}"

    async def place_order(self, req: OrderRequest) -> str:
        body = {
            "category": "linear",
            "symbol": req.symbol,
            "side": "Buy" if req.side == "buy" else "Sell",
            "orderType": "Market",
            "qty": self._fmt_qty(req.symbol, req.qty),
            "timeInForce": "IOC",
            "orderLinkId": req.client_order_id,
        }
        if req.reduce_only:
            body["reduceOnly"] = True
        j = await self._post("/v5/order/create", body)
        return str(j["result"]["orderId"])

    def _position_from_row(self, row: dict) -> Position:
        side = LONG if row.get("side") == "Buy" else SHORT
        return Position(
            id=int(_f(row.get("createdTime"))),
            symbol=row.get("symbol", ""),
            side=side,
            size=abs(_f(row.get("size"))),
            avg_price=_f(row.get("avgPrice")),
            leverage=_f(row.get("leverage"), 1.0),
            liquidation_price=_f(row.get("liqPrice")) or None,
            notional=_f(row.get("positionValue")),
            create_time=int(_f(row.get("createdTime"))),
            update_time=int(_f(row.get("updatedTime"))),
            realized_pnl=_f(row.get("curRealisedPnl")),
            unrealized_pnl=_f(row.get("unrealisedPnl")),
        )

    async def get_position(self, symbol: str) -> Optional[Position]:
        j = await self._get("/v5/position/list", {"category": "linear", "symbol": symbol})
        for row in _rows(j):
            if abs(_f(row.get("size"))) > 0:
                return self._position_from_row(row)
        return None

    async def get_positions_history(self, symbol: str, position_id: Optional[int] = None) -> List[Position]:
        start = int(position_id) if position_id else int(time.time() * 1000) - 7 * 86_400_000
        j = await self._get(
            "/v5/position/closed-pnl",
            {"category": "linear", "symbol": symbol, "startTime": start, "limit": 100},
        )
        rows = [r for r in _rows(j) if int(_f(r.get("createdTime"))) >= start]
        if position_id is None:
            return [self._closed_from_rows([r], int(_f(r.get("createdTime")))) for r in rows]
        if not rows:
            return []
        return [self._closed_from_rows(rows, int(position_id))]

    def _closed_from_rows(self, rows: List[dict], pid: int) -> Position:
        """One position may close in several fills: sum pnl, size-weight the exit."""
        size = sum(_f(r.get("closedSize")) for r in rows)
        exit_value = sum(_f(r.get("cumExitValue")) for r in rows)
        entry_value = sum(_f(r.get("cumEntryValue")) for r in rows)
        first = rows[0]
        # closed-pnl "side" is the closing order side
        side = SHORT if first.get("side") == "Buy" else LONG
        return Position(
            id=pid,
            symbol=first.get("symbol", ""),
            side=side,
            size=size,
            avg_price=(entry_value / size) if size else _f(first.get("avgEntryPrice")),
            leverage=_f(first.get("leverage"), 1.0),
            notional=entry_value,
            create_time=pid,
            update_time=max(int(_f(r.get("updatedTime"))) for r in rows),
            realized_pnl=sum(_f(r.get("closedPnl")) for r in rows),
            close_price=(exit_value / size) if size else _f(first.get("avgExitPrice")),
            is_liquidated=any(r.get("execType") == "BustTrade" for r in rows),
        )

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        try:
            await self._post(
                "/v5/position/set-leverage",
                {"category": "linear", "symbol": symbol, "buyLeverage": str(leverage), "sellLeverage": str(leverage)},
            )
        except ExchangeError as e:
            # leverage already at that value
            if e.ret_code == LEVERAGE_NOT_MODIFIED:
                return True
            raise
        return True

    async def get_balances(self) -> List[BalanceInfo]:
        j = await self._get("/v5/account/wallet-balance", {"accountType": "UNIFIED"})
        out: List[BalanceInfo] = []
        for acc in _rows(j):
            for c in acc.get("coin") or []:
                wallet = _f(c.get("walletBalance"))
                frozen = _f(c.get("totalPositionIM")) + _f(c.get("totalOrderIM")) + _f(c.get("locked"))
                out.append(BalanceInfo(coin=c.get("coin", ""), free=max(0.0, wallet - frozen), frozen=frozen))
        return out

    # --- streams ---
    def _emit_price(self, symbol: str, price: float, ts: int) -> None:
        for cb in list(self._price_cbs.get(symbol, {}).values()):
            try:
                cb(price, ts)
            except Exception as e:
                log_error(f"[bybit] price listener failed: {e!r}")

    def _emit_order(self, row: dict) -> None:
        status = ORDER_STATUS_MAP.get(row.get("orderStatus", ""), str(row.get("orderStatus", "")).lower())
        upd = OrderUpdate(
            order_id=str(row.get("orderId", "")),
            client_order_id=str(row.get("orderLinkId", "")),
            status=status,
            execution_price=_f(row.get("avgPrice")) or None,
            update_time=int(_f(row.get("updatedTime"))),
        )
        for cb in list(self._order_cbs.values()):
            try:
                cb(upd)
            except Exception as e:
                log_error(f"[bybit] order listener failed: {e!r}")

    async def _stream(self, name: str, url: str, on_open, on_message) -> None:
        backoff = 5
        while True:
            delay = backoff
            try:
                async with websockets.connect(
                    url,
                    ping_interval=20,
                    ping_timeout=45,
                    open_timeout=60,
                    close_timeout=10,
                    max_queue=None,
                ) as ws:
                    log("bybit", f"{name} stream CONNECTED")
                    backoff = 5
                    await on_open(ws)
                    while True:
                        msg = json.loads(await ws.recv())
                        on_message(msg)
            except asyncio.CancelledError:
                raise
            except (TimeoutError, asyncio.TimeoutError) as e:
                log_error(f"[bybit] {name} handshake timeout: {e!r}")
            except InvalidStatus as e:
                log_error(f"[bybit] {name} InvalidStatus: {e!r}")
                delay = 300
            except Exception as e:
                print(traceback.format_exc())
                log_error(f"[bybit] {name} stream crash: {e!r}")
            await asyncio.sleep(delay + random.uniform(0, 5.0))
            backoff = min(backoff * 2, 120)

    async def run_public_stream(self, symbols: List[str]) -> None:
        async def _open(ws) -> None:
            await ws.send(json.dumps({"op": "subscribe", "args": [f"publicTrade.{s}" for s in symbols]}))

        def _message(msg: dict) -> None:
            topic = msg.get("topic", "")
            if not topic.startswith("publicTrade."):
                return
            sym = topic.split(".", 1)[1]
            for tr in msg.get("data") or []:
                self._emit_price(sym, float(tr["p"]), int(tr["T"]))

        await self._stream("public", self.public_ws, _open, _message)

    async def run_private_stream(self) -> None:
        async def _open(ws) -> None:
            expires = int(time.time() * 1000) + 10_000
            sig = hmac.new(self.rest.secret.encode(), f"GET/realtime{expires}".encode(), hashlib.sha256).hexdigest()
            await ws.send(json.dumps({"op": "auth", "args": [self.rest.key, expires, sig]}))
            await ws.send(json.dumps({"op": "subscribe", "args": ["order"]}))

        def _message(msg: dict) -> None:
            if msg.get("op") == "auth" and not msg.get("success", False):
                log_error(f"[bybit] private stream auth failed: {msg}")
                return
            if msg.get("topic") != "order":
                return
            for row in msg.get("data") or []:
                self._emit_order(row)

        await self._stream("private", self.private_ws, _open, _message)
