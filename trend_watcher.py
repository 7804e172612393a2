#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Periodic market checks feeding the lifecycle states.

BreakoutTrendWatcher: 1m candles + live ticks -> breakout snapshot ->
support/resistance and trigger levels in BotRunState.

TrendClassifierWatcher: candles over one (budgeting) or two (combo) rolling
windows -> "Up" / "Down" / "Kangaroo" from a TrendClassifier.

Both loops wake on wall-clock minute boundaries, never die on a failed
iteration, and hand every result to hooked callbacks.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from bot_config import BotConfig
from bot_log import log, log_error
from bot_utils import now_ms
from exchange_ports import Candle, MarketDataPort, NotificationPort, TrendClassifier, Unhook
from strategies.breakout_signal import calculate_breakout_signal
from strategies.signals import SIGNAL_KANGAROO, SignalSnapshot, TriggerLevels, derive_trigger_levels
from trade_reporting import render_signal_chart
from trade_state import BotRunState
from ws_signaling import SignalingServer

MINUTE_MS = 60_000
TICK_RETENTION_MS = 5 * MINUTE_MS
SLEEP_POLL_SEC = 5.0


@dataclass(frozen=True)
class WatcherUpdate:
    snapshot: SignalSnapshot
    levels: TriggerLevels
    support: Optional[float]
    resistance: Optional[float]
    price: Optional[float]
    candles: Tuple[Candle, ...]
    ts: int


@dataclass(frozen=True)
class TrendUpdate:
    trend: str
    window: str  # "trend" for budgeting, "combo" for big/small pairs
    big: str = SIGNAL_KANGAROO
    small: str = SIGNAL_KANGAROO
    price: Optional[float] = None
    ts: int = 0


def next_check_delay_ms(now: int, interval_minutes: int, offset_ms: int) -> int:
    """Until the minute boundary `interval_minutes` after the current minute, plus offset."""
    minute_start = now - now % MINUTE_MS
    target = minute_start + offset_ms
    if now > target:
        target = minute_start + max(1, interval_minutes) * MINUTE_MS + offset_ms
    return max(0, target - now)


def drop_unfinished(candles: List[Candle], now: int) -> List[Candle]:
    return [c for c in candles if now - c.ts >= MINUTE_MS]


class _Watcher:
    def __init__(
        self,
        market: MarketDataPort,
        run_state: BotRunState,
        config: BotConfig,
        notifier: NotificationPort,
        signaling: Optional[SignalingServer] = None,
    ):
        self.market = market
        self.rs = run_state
        self.cfg = config
        self.notifier = notifier
        self.signaling = signaling
        self._hooks: Dict[int, Callable[[Any], None]] = {}
        self._hook_seq = 0
        self._task: Optional[asyncio.Task] = None

    def hook(self, cb: Callable[[Any], None]) -> Unhook:
        self._hook_seq += 1
        key = self._hook_seq
        self._hooks[key] = cb

        def _unhook() -> None:
            self._hooks.pop(key, None)

        return _unhook

    def _emit(self, update: Any) -> None:
        for cb in list(self._hooks.values()):
            try:
                cb(update)
            except Exception as e:
                log_error(f"watcher callback failed: {e!r}")

    @property
    def started(self) -> bool:
        return self._task is not None

    def ensure_started(self) -> None:
        if self._task is None:
            self._on_start()
            self._task = asyncio.create_task(self.run())

    def _on_start(self) -> None:
        pass

    def _on_stop(self) -> None:
        pass

    def stop(self) -> None:
        self._on_stop()
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def interval_minutes(self) -> int:
        return self.cfg.check_interval_minutes

    async def check_once(self, now: Optional[int] = None) -> Optional[Any]:
        raise NotImplementedError

    async def _wait_next(self) -> None:
        await asyncio.sleep(next_check_delay_ms(now_ms(), self.interval_minutes, self.cfg.check_offset_ms) / 1000.0)

    async def run(self) -> None:
        while True:
            if self.rs.is_sleeping:
                await asyncio.sleep(SLEEP_POLL_SEC)
                continue
            if self.signaling is not None:
                await self.signaling.wait_for_client()
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_error(f"[{self.__class__.__name__}] check failed: {e!r}")
                self.notifier.queue_message(f"⚠️ Signal check failed: {e}")
            await self._wait_next()


class BreakoutTrendWatcher(_Watcher):
    def __init__(self, *args, send_charts: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.send_charts = send_charts
        self._ticks: List[Tuple[int, float]] = []
        self._unhook_ticks: Optional[Unhook] = None
        self.last_update: Optional[WatcherUpdate] = None

    def _on_start(self) -> None:
        self._unhook_ticks = self.market.hook_price_listener_with_timestamp(self.rs.symbol, self.on_tick)

    def _on_stop(self) -> None:
        if self._unhook_ticks is not None:
            self._unhook_ticks()
            self._unhook_ticks = None

    def on_tick(self, price: float, ts: int) -> None:
        self._ticks.append((int(ts), float(price)))
        cutoff = now_ms() - TICK_RETENTION_MS
        if self._ticks and self._ticks[0][0] < cutoff:
            self._ticks = [t for t in self._ticks if t[0] >= cutoff]

    def lookback_ms(self) -> int:
        hours = max(1, math.ceil(self.cfg.signal.min_required * self.interval_minutes / 60))
        return hours * 3600 * 1000

    def with_synthetic(self, candles: List[Candle]) -> List[Candle]:
        """Append the forming minute built from ticks seen after the last closed bar."""
        if not candles:
            return candles
        last = candles[-1]
        close_ts = last.ts + MINUTE_MS
        ticks = [p for ts, p in self._ticks if ts >= close_ts]
        if not ticks:
            return candles
        self._ticks = [t for t in self._ticks if t[0] >= close_ts]
        synthetic = Candle(
            ts=close_ts,
            o=last.c,
            h=max(max(ticks), last.c),
            l=min(min(ticks), last.c),
            c=ticks[-1],
        )
        return candles + [synthetic]

    def _pull_toward_price(self, raw: Optional[float], price: float) -> Optional[float]:
        if raw is None:
            return None
        f = self.cfg.sr_distance_factor
        if f == 1.0:
            return raw
        return price + (raw - price) * f

    async def check_once(self, now: Optional[int] = None) -> Optional[WatcherUpdate]:
        now = now if now is not None else now_ms()
        params = self.cfg.signal
        raw = await self.market.get_candles(self.rs.symbol, now - self.lookback_ms(), now, "1")
        candles = drop_unfinished(sorted(raw, key=lambda c: c.ts), now)
        if len(candles) < params.min_required:
            msg = f"⚠️ Not enough candles ({len(candles)}) for signal calculation. Need at least {params.min_required}. Waiting..."
            log("watcher", msg)
            self.notifier.queue_message(msg)
            return None

        candles = self.with_synthetic(candles)
        snap = calculate_breakout_signal(candles, params, evaluated_at=now)
        price = candles[-1].c
        support = self._pull_toward_price(snap.support, price)
        resistance = self._pull_toward_price(snap.resistance, price)
        adjusted = SignalSnapshot(
            signal=snap.signal,
            support=support,
            resistance=resistance,
            atr=snap.atr,
            roc=snap.roc,
            slope=snap.slope,
            evaluated_at=snap.evaluated_at,
            close=snap.close,
        )
        levels = derive_trigger_levels(adjusted, self.cfg.buffer_pct, self.rs.price_precision)

        rs = self.rs
        rs.current_signal = snap.signal
        rs.current_support = support
        rs.current_resistance = resistance
        rs.long_trigger = levels.long_trigger
        rs.short_trigger = levels.short_trigger
        rs.last_sr_update_time = now_ms()

        update = WatcherUpdate(
            snapshot=snap,
            levels=levels,
            support=support,
            resistance=resistance,
            price=price,
            candles=tuple(candles),
            ts=rs.last_sr_update_time,
        )
        self.last_update = update

        if self.send_charts:
            self._send_chart(candles, support, resistance, levels)
        self.notifier.queue_message(
            f"ℹ️ Breakout signal check result: {snap.signal} - Price: {price:.4f}\n"
            f"Support: {_fmt(support)} | short trigger: {_fmt(levels.short_trigger)}\n"
            f"Resistance: {_fmt(resistance)} | long trigger: {_fmt(levels.long_trigger)}"
        )
        self._emit(update)
        return update

    def _send_chart(self, candles, support, resistance, levels: TriggerLevels) -> None:
        try:
            img = render_signal_chart(
                self.rs.symbol,
                candles[-120:],
                support,
                resistance,
                levels.long_trigger,
                levels.short_trigger,
                self.rs.curr_position,
            )
        except Exception as e:
            log_error(f"signal chart failed: {e!r}")
            return
        self.notifier.queue_message(img)


def _fmt(v: Optional[float]) -> str:
    return f"{v:.4f}" if v is not None else "N/A"


class TrendClassifierWatcher(_Watcher):
    """
    Budgeting: classify the last `trend_window_minutes` every check interval.
    Combo: classify the small window every small interval and the big window
    every (big / small)-th check.
    """

    def __init__(self, *args, classifier: TrendClassifier, combo: bool = False, **kwargs):
        super().__init__(*args, **kwargs)
        self.classifier = classifier
        self.combo = combo
        self._attempt = -1
        self._big: Optional[str] = None

    @property
    def interval_minutes(self) -> int:
        if self.combo:
            return self.cfg.small_interval_minutes
        return self.cfg.check_interval_minutes

    async def _classify_window(self, window_minutes: int, now: int) -> Tuple[Optional[str], Optional[float]]:
        """Closed 1m bars of the window plus the mark price as the forming minute."""
        raw = await self.market.get_candles(self.rs.symbol, now - window_minutes * MINUTE_MS, now, "1")
        candles = drop_unfinished(sorted(raw, key=lambda c: c.ts), now)
        need = self.cfg.signal.min_required
        if len(candles) < need:
            msg = (
                f"⚠️ Not enough candles ({len(candles)}) in the {window_minutes}m window. "
                f"Need at least {need}. Waiting..."
            )
            log("watcher", msg)
            self.notifier.queue_message(msg)
            return None, None
        mark = await self.market.get_mark_price(self.rs.symbol)
        candles.append(Candle(ts=now - now % MINUTE_MS, o=mark, h=mark, l=mark, c=mark))
        trend = await self.classifier.classify(candles)
        return trend, mark

    async def check_once(self, now: Optional[int] = None) -> Optional[TrendUpdate]:
        now = now if now is not None else now_ms()
        rs = self.rs
        if not self.combo:
            trend, price = await self._classify_window(self.cfg.trend_window_minutes, now)
            if trend is None:
                return None
            rs.current_trend = trend
            rs.last_trend_update_time = now_ms()
            update = TrendUpdate(trend=trend, window="trend", price=price, ts=rs.last_trend_update_time)
            self.notifier.queue_message(
                f"ℹ️ New {self.cfg.trend_window_minutes}m trend check result: {trend} - Price: {price}"
            )
            self._emit(update)
            return update

        cfg = self.cfg
        checks_per_big = max(1, cfg.big_interval_minutes // cfg.small_interval_minutes)
        self._attempt = (self._attempt + 1) % checks_per_big
        same_window = cfg.big_window_minutes == cfg.small_window_minutes

        price: Optional[float] = None
        if self._big is None or self._attempt == 0:
            big, price = await self._classify_window(cfg.big_window_minutes, now)
            if big is None:
                return None
            self._big = big
            self.notifier.queue_message(
                f"ℹ️ New Big {cfg.big_window_minutes}m trend check result: {self._big} - price: {price}"
            )
        if same_window and self._attempt == 0:
            small = self._big
        else:
            small, price = await self._classify_window(cfg.small_window_minutes, now)
            if small is None:
                return None
            self.notifier.queue_message(
                f"ℹ️ New Small {cfg.small_window_minutes}m trend check result: {small} - price: {price}"
            )

        big = self._big
        rs.big_trend = big
        rs.small_trend = small
        rs.current_trend = small
        rs.last_trend_update_time = now_ms()
        if cfg.bet_rules:
            self.notifier.queue_message(
                f"ℹ️ Bet rules for {big}-{small}: {cfg.bet_rules[big][small].upper()}"
            )
        update = TrendUpdate(trend=small, window="combo", big=big, small=small, price=price, ts=rs.last_trend_update_time)
        self._emit(update)
        return update
