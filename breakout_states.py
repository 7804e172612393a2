#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import Optional

from bot_utils import now_ms
from exchange_ports import LONG, SHORT, Position
from indicators import atr_simple, true_ranges
from lifecycle import (
    TRIGGER_SIGNAL,
    TRIGGER_SUPPORT_RESISTANCE,
    TRIGGER_TRAILING,
    EntryStateBase,
    ResolveStateBase,
    Trigger,
    TriggerSet,
)
from trend_watcher import WatcherUpdate


class BreakoutWaitForEntryState(EntryStateBase):
    """
    Opens when the live price crosses a trigger level:
    price >= long_trigger -> up-cross, price <= short_trigger -> down-cross.
    follow mode trades the cross direction, against mode the opposite.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._last_price: Optional[float] = None

    def arm(self, triggers: TriggerSet) -> None:
        rs = self.ctx.run_state
        triggers.add(self.ctx.market.hook_price_listener_with_timestamp(rs.symbol, self._on_tick))
        triggers.add(self.ctx.feed.hook(self._on_levels))

    def _side_for_cross(self, up: bool) -> str:
        follow = self.ctx.config.entry_mode == "follow"
        return LONG if up == follow else SHORT

    def _check(self, price: float, ts: int) -> None:
        rs = self.ctx.run_state
        triggers = self.triggers
        if triggers is None or triggers.done:
            return
        if rs.curr_position is not None:
            return
        if not rs.signal_fresh_for_entry():
            return
        if rs.long_trigger is not None and price >= rs.long_trigger:
            triggers.fire(Trigger(TRIGGER_SIGNAL, price, ts, self._side_for_cross(True), rs.current_resistance))
        elif rs.short_trigger is not None and price <= rs.short_trigger:
            triggers.fire(Trigger(TRIGGER_SIGNAL, price, ts, self._side_for_cross(False), rs.current_support))

    def _on_tick(self, price: float, ts: int) -> None:
        self._last_price = price
        self._check(price, ts)

    def _on_levels(self, update: WatcherUpdate) -> None:
        # new levels may already be behind the last seen price
        if self._last_price is not None:
            self._check(self._last_price, now_ms())


class BreakoutWaitForResolveState(ResolveStateBase):
    """
    Exits on take-profit, on a support/resistance breach seen after a fresh
    level update, on the optional ATR trailing stop, or on liquidation.
    """

    def arm(self, triggers: TriggerSet, pos: Position) -> None:
        triggers.add(self.ctx.feed.hook(self._on_levels))
        last = getattr(self.ctx.feed, "last_update", None)
        if last is not None:
            self._update_trailing(pos, last)

    def check_tick(self, pos: Position, price: float, ts: int) -> Optional[Trigger]:
        rs = self.ctx.run_state
        if rs.signal_fresh_for_exit():
            if pos.side == LONG and rs.current_support is not None and price <= rs.current_support:
                return Trigger(TRIGGER_SUPPORT_RESISTANCE, price, ts)
            if pos.side == SHORT and rs.current_resistance is not None and price >= rs.current_resistance:
                return Trigger(TRIGGER_SUPPORT_RESISTANCE, price, ts)
        return self._check_trailing(pos, price, ts)

    # --- trailing stop ---
    def _on_levels(self, update: WatcherUpdate) -> None:
        pos = self.ctx.run_state.curr_position
        if pos is not None:
            self._update_trailing(pos, update)

    def _update_trailing(self, pos: Position, update: WatcherUpdate) -> None:
        cfg = self.ctx.config
        if cfg.trail_multiplier <= 0:
            return
        rs = self.ctx.run_state
        candles = list(update.candles)
        tr = true_ranges([c.h for c in candles], [c.l for c in candles], [c.c for c in candles])
        atr = atr_simple(tr, cfg.trail_atr_length)
        if atr is None:
            return

        entry_minute = rs.last_entry_time - rs.last_entry_time % 60_000
        since_entry = [c for c in candles if c.ts >= entry_minute][-cfg.trail_lookback:]
        rs.trailing_window.clear()
        rs.trailing_window.extend((c.h, c.l, c.c) for c in since_entry)
        if not rs.trailing_window:
            return

        if pos.side == LONG:
            level = max(h for h, _, _ in rs.trailing_window) - cfg.trail_multiplier * atr
            if rs.trailing_level is None or level > rs.trailing_level:
                rs.trailing_level = level
        else:
            level = min(l for _, l, _ in rs.trailing_window) + cfg.trail_multiplier * atr
            if rs.trailing_level is None or level < rs.trailing_level:
                rs.trailing_level = level

    def _check_trailing(self, pos: Position, price: float, ts: int) -> Optional[Trigger]:
        rs = self.ctx.run_state
        level = rs.trailing_level
        if level is None:
            return None
        breached = price <= level if pos.side == LONG else price >= level
        if not breached:
            rs.trailing_breach_count = 0
            return None
        rs.trailing_breach_count += 1
        if rs.trailing_breach_count < self.ctx.config.trail_confirm_ticks:
            return None
        return Trigger(TRIGGER_TRAILING, price, ts, reference=level)
