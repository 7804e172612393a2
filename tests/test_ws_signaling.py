from __future__ import annotations

import asyncio
import json

import websockets

from helpers import FakeNotifier, wait_until
from ws_signaling import CLOSE_POSITION, OPEN_SHORT, SignalingServer, build_message


def test_build_message_shapes():
    assert json.loads(build_message(OPEN_SHORT, "250.00")) == {"type": "open-short", "openBalanceAmt": "250.00"}
    assert json.loads(build_message(CLOSE_POSITION)) == {"type": "close-position"}


def test_broadcast_ping_and_client_counting():
    notifier = FakeNotifier()
    counts = []
    server = SignalingServer(0, notifier, on_count_change=counts.append)

    async def scenario():
        await server.start()
        port = server._server.sockets[0].getsockname()[1]
        try:
            async with websockets.connect(f"ws://127.0.0.1:{port}") as ws:
                await wait_until(lambda: server.connected_clients == 1)
                await server.wait_for_client()
                assert await server.broadcast(OPEN_SHORT, "250.00") == 1
                got = json.loads(await ws.recv())
                await ws.send("not json")
                await ws.send(json.dumps({"type": "ping"}))
                pong = json.loads(await ws.recv())
            await wait_until(lambda: server.connected_clients == 0)
        finally:
            await server.stop()
        return got, pong

    got, pong = asyncio.run(scenario())
    assert got == {"type": "open-short", "openBalanceAmt": "250.00"}
    assert pong == {"type": "pong"}
    assert counts == [1, 0]
    assert notifier.texts() == [
        "➕ WS client connected. Total connected: 1",
        "➖ WS client disconnected. Total connected: 0",
    ]


def test_wait_for_client_announces_the_wait():
    notifier = FakeNotifier()
    server = SignalingServer(0, notifier)

    async def scenario():
        waiter = asyncio.create_task(server.wait_for_client(poll_sec=0.01))
        await asyncio.sleep(0.03)
        assert not waiter.done()
        server.clients.add(object())
        await asyncio.wait_for(waiter, 1)

    asyncio.run(scenario())
    assert notifier.texts() == [
        "❗ No clients connected yet, waiting for client to be connected to continue...",
        "✅ Client connected, continuing...",
    ]
