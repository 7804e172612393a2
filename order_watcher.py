#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Optional

from bot_log import log
from bot_utils import now_ms
from exchange_ports import (
    ORDER_FAILURE_STATUSES,
    ORDER_FILLED,
    FillNotConfirmedError,
    FillUpdate,
    LookupResult,
    NotFound,
    Ok,
    OrderRejectedError,
    OrderUpdate,
    TradingPort,
    TransientError,
    lookup_position,
)

EARLY_CACHE_MAX = 100

FillPoll = Callable[[], Awaitable[LookupResult[FillUpdate]]]


class OrderFillWatcher:
    """
    Resolves a client order id to a confirmed fill.

    Two sources race: the order-update stream of the trading port and an
    optional REST poll (every `poll_interval_sec`, at most `max_poll_attempts`
    times). Whichever confirms first wins. No confirmation before the poll
    budget or the timeout runs out -> FillNotConfirmedError.
    """

    def __init__(
        self,
        trading: TradingPort,
        *,
        default_timeout_ms: int = 60_000,
        poll_interval_sec: float = 5.0,
        max_poll_attempts: int = 10,
    ):
        self.trading = trading
        self.default_timeout_ms = max(1000, int(default_timeout_ms))
        self.poll_interval_sec = poll_interval_sec
        self.max_poll_attempts = max_poll_attempts
        self._pending: Dict[str, asyncio.Future] = {}
        # updates that arrived before wait_for_fill registered the id
        self._early: "OrderedDict[str, OrderUpdate]" = OrderedDict()
        self._unhook = trading.hook_order_listener(self._on_order_update)

    def dispose(self) -> None:
        self._unhook()
        for coid, fut in list(self._pending.items()):
            if not fut.done():
                fut.set_exception(FillNotConfirmedError(f"watcher disposed before fill of {coid}"))
        self._pending.clear()

    def _on_order_update(self, upd: OrderUpdate) -> None:
        fut = self._pending.get(upd.client_order_id)
        if fut is None:
            if upd.status == ORDER_FILLED or upd.status in ORDER_FAILURE_STATUSES:
                self._early[upd.client_order_id] = upd
                while len(self._early) > EARLY_CACHE_MAX:
                    self._early.popitem(last=False)
            return
        if fut.done():
            return
        self._resolve(fut, upd)

    @staticmethod
    def _resolve(fut: asyncio.Future, upd: OrderUpdate) -> None:
        if upd.status == ORDER_FILLED:
            fut.set_result(FillUpdate(upd.client_order_id, upd.execution_price, upd.update_time or now_ms()))
        elif upd.status in ORDER_FAILURE_STATUSES:
            fut.set_exception(OrderRejectedError(f"order {upd.client_order_id} ended with status {upd.status}"))

    async def _poll_loop(self, coid: str, fut: asyncio.Future, poll: FillPoll) -> None:
        try:
            for attempt in range(1, self.max_poll_attempts + 1):
                await asyncio.sleep(self.poll_interval_sec)
                if fut.done():
                    return
                res = await poll()
                if fut.done():
                    return
                if isinstance(res, Ok):
                    fut.set_result(res.value)
                    return
                if isinstance(res, TransientError):
                    log("fill", f"{coid} poll {attempt}/{self.max_poll_attempts}: transient error {res.error!r}")
                else:
                    log("fill", f"{coid} poll {attempt}/{self.max_poll_attempts}: not confirmed yet")
            if not fut.done():
                fut.set_exception(
                    FillNotConfirmedError(f"fill not confirmed for {coid} after {self.max_poll_attempts} polls")
                )
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)

    async def wait_for_fill(
        self,
        client_order_id: str,
        poll: Optional[FillPoll] = None,
        timeout_ms: Optional[int] = None,
    ) -> FillUpdate:
        if not client_order_id:
            raise ValueError("client_order_id is empty")
        if client_order_id in self._pending:
            raise RuntimeError(f"already awaiting {client_order_id}")

        fut = asyncio.get_running_loop().create_future()
        self._pending[client_order_id] = fut
        early = self._early.pop(client_order_id, None)
        if early is not None:
            self._resolve(fut, early)
        poll_task = asyncio.create_task(self._poll_loop(client_order_id, fut, poll)) if poll else None
        timeout_sec = max(1000, int(timeout_ms or self.default_timeout_ms)) / 1000.0
        try:
            return await asyncio.wait_for(fut, timeout_sec)
        except asyncio.TimeoutError:
            raise FillNotConfirmedError(f"timed out after {timeout_sec:.0f}s waiting for fill of {client_order_id}")
        finally:
            self._pending.pop(client_order_id, None)
            if poll_task is not None and not poll_task.done():
                poll_task.cancel()


def opened_position_poll(trading: TradingPort, symbol: str, side: str, client_order_id: str) -> FillPoll:
    async def _poll() -> LookupResult[FillUpdate]:
        res = await lookup_position(trading, symbol)
        if not isinstance(res, Ok):
            return res
        pos = res.value
        if pos.side != side:
            return NotFound(f"{symbol} position is {pos.side}, expected {side}")
        return Ok(FillUpdate(client_order_id, pos.avg_price, pos.update_time or pos.create_time or now_ms()))

    return _poll

