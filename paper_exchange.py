#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""In-memory trading port.

DRY_RUN: prices and candles come from a real market-data source, orders are
simulated here. Tests: prices are pushed by hand with `push_price()`.

Fills happen at the last seen price. Liquidation price is the naive
isolated-margin level entry * (1 -/+ 1 / leverage); crossing it books the
position as liquidated at that level. Reported realized PnL excludes fees,
the fees only show up in the balance.
"""

from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from bot_log import log
from bot_utils import now_ms, unrealized_pnl
from exchange_ports import (
    LONG,
    ORDER_FILLED,
    SHORT,
    BalanceInfo,
    Candle,
    ExchangeError,
    MarketDataPort,
    OrderRequest,
    OrderUpdate,
    Position,
    SymbolInfo,
    Unhook,
)

DEFAULT_TAKER_FEE = 0.00055


class PaperExchange:
    def __init__(
        self,
        symbol: str,
        *,
        balance: float = 1000.0,
        coin: str = "USDT",
        taker_fee: float = DEFAULT_TAKER_FEE,
        symbol_info: Optional[SymbolInfo] = None,
        source: Optional[MarketDataPort] = None,
    ):
        self.symbol = symbol
        self.coin = coin
        self.balance = float(balance)
        self.taker_fee = taker_fee
        self.symbol_info = symbol_info or SymbolInfo(price_precision=2, base_precision=3, quote_precision=2)
        self.source = source

        self.leverage = 1
        self.last_price: Optional[float] = None
        self.last_ts = 0
        self.candles: List[Candle] = []
        self.position: Optional[Position] = None
        self.history: List[Position] = []
        # False simulates an exchange that never publishes closed positions
        self.publish_history = True

        self._margin = 0.0
        self._last_id = 0
        self._seq = itertools.count(1)
        self._price_cbs: Dict[int, Callable[[float, int], None]] = {}
        self._order_cbs: Dict[int, Callable[[OrderUpdate], None]] = {}
        self._source_unhook: Optional[Unhook] = None

    # --- feed ---
    def attach_source(self) -> None:
        if self.source is not None and self._source_unhook is None:
            self._source_unhook = self.source.hook_price_listener_with_timestamp(self.symbol, self.push_price)

    def detach_source(self) -> None:
        if self._source_unhook is not None:
            self._source_unhook()
            self._source_unhook = None

    def push_price(self, price: float, ts: Optional[int] = None) -> None:
        self.last_price = float(price)
        self.last_ts = int(ts if ts is not None else now_ms())
        pos = self.position
        if pos is not None and pos.liquidation_price:
            hit = price <= pos.liquidation_price if pos.side == LONG else price >= pos.liquidation_price
            if hit:
                self._close(pos.liquidation_price, self.last_ts, liquidated=True)
        for cb in list(self._price_cbs.values()):
            cb(self.last_price, self.last_ts)

    def add_candles(self, candles: List[Candle]) -> None:
        self.candles.extend(candles)
        self.candles.sort(key=lambda c: c.ts)

    def _add_cb(self, store: Dict[int, Callable], cb: Callable) -> Unhook:
        key = next(self._seq)
        store[key] = cb

        def _unhook() -> None:
            store.pop(key, None)

        return _unhook

    async def get_candles(self, symbol: str, start_ms: int, end_ms: int, resolution: str = "1") -> List[Candle]:
        if self.source is not None:
            return await self.source.get_candles(symbol, start_ms, end_ms, resolution)
        return [c for c in self.candles if start_ms <= c.ts <= end_ms]

    async def get_mark_price(self, symbol: str) -> float:
        if self.last_price is None:
            if self.source is not None:
                return await self.source.get_mark_price(symbol)
            raise ExchangeError(f"no price for {symbol} yet")
        return self.last_price

    def hook_price_listener(self, symbol: str, cb: Callable[[float], None]) -> Unhook:
        return self._add_cb(self._price_cbs, lambda price, ts: cb(price))

    def hook_price_listener_with_timestamp(self, symbol: str, cb: Callable[[float, int], None]) -> Unhook:
        return self._add_cb(self._price_cbs, cb)

    # --- trading ---
    def hook_order_listener(self, cb: Callable[[OrderUpdate], None]) -> Unhook:
        return self._add_cb(self._order_cbs, cb)

    def _emit(self, upd: OrderUpdate) -> None:
        for cb in list(self._order_cbs.values()):
            cb(upd)

    def _next_id(self) -> int:
        self._last_id = max(now_ms(), self._last_id + 1)
        return self._last_id

    async def place_order(self, req: OrderRequest) -> str:
        order_id = f"paper-{next(self._seq)}"
        price = self.last_price
        if price is None:
            raise ExchangeError(f"no price for {req.symbol} yet")
        ts = now_ms()

        if req.reduce_only:
            if self.position is None:
                self._emit(OrderUpdate(order_id, req.client_order_id, "rejected", None, ts))
                return order_id
            self._close(price, ts, liquidated=False)
        else:
            if self.position is not None:
                self._emit(OrderUpdate(order_id, req.client_order_id, "rejected", None, ts))
                return order_id
            notional = req.qty * price
            margin = notional / self.leverage
            fee = notional * self.taker_fee
            if margin + fee > self.balance:
                self._emit(OrderUpdate(order_id, req.client_order_id, "rejected", None, ts))
                return order_id
            self._open(LONG if req.side == "buy" else SHORT, req.qty, price, margin, fee, ts)

        log("paper", f"{req.side} {req.qty} {req.symbol} @ {price} ({req.client_order_id})")
        self._emit(OrderUpdate(order_id, req.client_order_id, ORDER_FILLED, price, ts))
        return order_id

    def _open(self, side: str, qty: float, price: float, margin: float, fee: float, ts: int) -> None:
        lev = float(self.leverage)
        liq = price * (1 - 1 / lev) if side == LONG else price * (1 + 1 / lev)
        self.balance -= margin + fee
        self._margin = margin
        self.position = Position(
            id=self._next_id(),
            symbol=self.symbol,
            side=side,
            size=qty,
            avg_price=price,
            leverage=lev,
            liquidation_price=liq if lev > 1 else None,
            notional=qty * price,
            create_time=ts,
            update_time=ts,
        )

    def _close(self, price: float, ts: int, liquidated: bool) -> None:
        pos = self.position
        if pos is None:
            return
        gross = unrealized_pnl(pos, price)
        fee = pos.size * price * self.taker_fee
        self.balance += max(0.0, self._margin + gross - fee)
        self.position = None
        closed = Position(
            id=pos.id,
            symbol=pos.symbol,
            side=pos.side,
            size=pos.size,
            avg_price=pos.avg_price,
            leverage=pos.leverage,
            liquidation_price=pos.liquidation_price,
            notional=pos.notional,
            create_time=pos.create_time,
            update_time=ts,
            realized_pnl=gross,
            close_price=price,
            is_liquidated=liquidated,
        )
        if self.publish_history:
            self.history.append(closed)

    async def get_position(self, symbol: str) -> Optional[Position]:
        pos = self.position
        if pos is None or self.last_price is None:
            return replace(pos) if pos is not None else None
        return replace(pos, unrealized_pnl=unrealized_pnl(pos, self.last_price))

    async def get_positions_history(self, symbol: str, position_id: Optional[int] = None) -> List[Position]:
        if position_id is None:
            return list(self.history)
        return [p for p in self.history if p.id == position_id]

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        self.leverage = int(leverage)
        return True

    async def get_balances(self) -> List[BalanceInfo]:
        return [BalanceInfo(self.coin, round(self.balance, 8))]

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        return self.symbol_info
