# tests/helpers.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from bot_config import BotConfig
from bot_utils import now_ms
from exchange_ports import Candle
from lifecycle import BotContext, EntryStateBase, LifecycleMachine, ResolveStateBase, StartingState, build_machine
from order_watcher import OrderFillWatcher
from paper_exchange import PaperExchange
from pnl_accountant import PnLAccountant
from retry import RetryPolicy
from trade_state import BotRunState

NO_WAIT = RetryPolicy(retries=2, min_delay_sec=0.0, max_delay_sec=0.0, jitter=0.0)


class FakeNotifier:
    def __init__(self):
        self.messages: List[Any] = []

    def queue_message(self, message) -> None:
        self.messages.append(message)

    def texts(self) -> List[str]:
        return [m for m in self.messages if isinstance(m, str)]

    def contains(self, part: str) -> bool:
        return any(part in m for m in self.texts())

    async def flush(self) -> None:
        pass


class FakeFeed:
    """Stands in for a watcher: tests push updates with emit()."""

    def __init__(self):
        self._hooks: Dict[int, Callable[[Any], None]] = {}
        self._seq = 0
        self.started = False
        self.last_update = None

    def hook(self, cb):
        self._seq += 1
        key = self._seq
        self._hooks[key] = cb

        def _unhook():
            self._hooks.pop(key, None)

        return _unhook

    @property
    def listeners(self) -> int:
        return len(self._hooks)

    def ensure_started(self) -> None:
        self.started = True

    def emit(self, update) -> None:
        for cb in list(self._hooks.values()):
            cb(update)


def make_config(**overrides) -> BotConfig:
    base = dict(
        symbol="BTCUSDT",
        leverage=10,
        bet_size=100.0,
        check_interval_minutes=1,
        sleep_after_liquidation="1m",
        confirm_attempts=10,
        confirm_interval_sec=0.0,
        order_timeout_ms=2000,
    )
    base.update(overrides)
    return BotConfig(**base)


@dataclass
class Harness:
    ctx: BotContext
    paper: PaperExchange
    notifier: FakeNotifier
    feed: FakeFeed
    machine: LifecycleMachine
    entry: EntryStateBase
    resolve: ResolveStateBase

    @property
    def rs(self) -> BotRunState:
        return self.ctx.run_state


def make_harness(
    cfg: BotConfig,
    entry_cls,
    resolve_cls,
    *,
    balance: float = 1000.0,
    price: float = 100.0,
    signaling=None,
) -> Harness:
    rs = BotRunState(symbol=cfg.symbol, leverage=cfg.leverage, bet_size=cfg.bet_size)
    paper = PaperExchange(cfg.symbol, balance=balance)
    paper.push_price(price)
    notifier = FakeNotifier()
    feed = FakeFeed()
    ctx = BotContext(
        config=cfg,
        run_state=rs,
        market=paper,
        trading=paper,
        notifier=notifier,
        accountant=PnLAccountant(rs, paper, notifier, retry_policy=NO_WAIT),
        fill_watcher=OrderFillWatcher(paper, default_timeout_ms=cfg.order_timeout_ms, poll_interval_sec=0.0, max_poll_attempts=3),
        feed=feed,
        signaling=signaling,
        retry_policy=NO_WAIT,
        strategy_name=cfg.variant,
    )
    entry = entry_cls(ctx)
    resolve = resolve_cls(ctx)
    machine = build_machine(ctx, entry, resolve, StartingState(ctx, sleep_poll_sec=0.01))
    return Harness(ctx, paper, notifier, feed, machine, entry, resolve)


async def wait_until(pred: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def armed(state) -> bool:
    return state.triggers is not None and not state.triggers.done


def flat_candles(
    n: int,
    *,
    close: float = 100.0,
    half_range: float = 0.25,
    start_ts: int = 0,
    volume: Optional[float] = None,
) -> List[Candle]:
    return [
        Candle(ts=start_ts + i * 60_000, o=close, h=close + half_range, l=close - half_range, c=close, v=volume)
        for i in range(n)
    ]


def with_last(candles: Sequence[Candle], o: float, h: float, l: float, c: float, v: Optional[float] = None) -> List[Candle]:
    ts = candles[-1].ts + 60_000 if candles else 0
    return list(candles) + [Candle(ts=ts, o=o, h=h, l=l, c=c, v=v)]


def fresh_ts() -> int:
    # strictly after anything stamped with now_ms() so far
    return now_ms() + 1
