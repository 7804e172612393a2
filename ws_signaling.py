#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Bot -> client signaling over a local websocket server.

A client (for example a browser agent that clicks through an exchange UI)
connects, receives `open-long` / `open-short` / `close-position` broadcasts
and may send `{"type": "ping"}` to get a `pong` back.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, Set

import websockets

from bot_log import log
from exchange_ports import NotificationPort

OPEN_LONG = "open-long"
OPEN_SHORT = "open-short"
CLOSE_POSITION = "close-position"
PING = "ping"
PONG = "pong"


def build_message(kind: str, open_balance_amt: Optional[str] = None) -> str:
    if kind in (OPEN_LONG, OPEN_SHORT):
        return json.dumps({"type": kind, "openBalanceAmt": open_balance_amt})
    return json.dumps({"type": kind})


class SignalingServer:
    def __init__(
        self,
        port: int,
        notifier: Optional[NotificationPort] = None,
        host: str = "127.0.0.1",
        on_count_change: Optional[Callable[[int], None]] = None,
    ):
        self.port = int(port)
        self.host = host
        self.notifier = notifier
        self.on_count_change = on_count_change
        self.clients: Set[Any] = set()
        self._server = None

    @property
    def connected_clients(self) -> int:
        return len(self.clients)

    def _count_changed(self, sign: str) -> None:
        n = len(self.clients)
        if self.on_count_change is not None:
            self.on_count_change(n)
        if self.notifier is not None:
            word = "connected" if sign == "+" else "disconnected"
            self.notifier.queue_message(f"{'➕' if sign == '+' else '➖'} WS client {word}. Total connected: {n}")

    async def _handler(self, ws) -> None:
        self.clients.add(ws)
        self._count_changed("+")
        try:
            async for raw in ws:
                await self._on_message(ws, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.clients.discard(ws)
            self._count_changed("-")

    async def _on_message(self, ws, raw) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            log("ws", f"invalid JSON message: {raw!r}")
            return
        if isinstance(data, dict) and data.get("type") == PING:
            await ws.send(build_message(PONG))

    async def start(self) -> None:
        self._server = await websockets.serve(self._handler, self.host, self.port)
        log("ws", f"signaling server running on ws://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def broadcast(self, kind: str, open_balance_amt: Optional[str] = None) -> int:
        msg = build_message(kind, open_balance_amt)
        sent = 0
        for ws in list(self.clients):
            try:
                await ws.send(msg)
                sent += 1
            except websockets.ConnectionClosed:
                self.clients.discard(ws)
        log("ws", f"broadcast {kind} -> {sent} client(s)")
        return sent

    async def wait_for_client(self, poll_sec: float = 1.0) -> None:
        if self.clients:
            return
        if self.notifier is not None:
            self.notifier.queue_message("❗ No clients connected yet, waiting for client to be connected to continue...")
        while not self.clients:
            await asyncio.sleep(poll_sec)
        if self.notifier is not None:
            self.notifier.queue_message("✅ Client connected, continuing...")
