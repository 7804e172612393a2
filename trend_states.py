#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Entry / resolve states of the trend-driven bots.

budgeting: one rolling window. Bet on the first Up/Down trend seen after the
last exit (follow: Up -> long, against: Up -> short). Resolve when a fresh
trend turns Kangaroo or flips.

combo: big and small windows looked up in a 3x3 rule matrix
(long / short / skip). Resolve when the rule says skip or the other side; in
the second case the other side is opened right away on the next entry.
"""

from __future__ import annotations

from typing import Optional

from bot_utils import now_ms, opposite_side
from exchange_ports import LONG, SHORT, Position
from lifecycle import (
    TRIGGER_TREND,
    EntryStateBase,
    OpenedTrade,
    ResolveStateBase,
    Trigger,
    TriggerSet,
)
from strategies.signals import SIGNAL_DOWN, SIGNAL_KANGAROO, SIGNAL_UP
from trade_state import ComboRecord
from trend_watcher import TrendUpdate

RULE_SKIP = "skip"


def side_for_trend(trend: str, entry_mode: str) -> Optional[str]:
    if trend not in (SIGNAL_UP, SIGNAL_DOWN):
        return None
    follow = entry_mode == "follow"
    return LONG if (trend == SIGNAL_UP) == follow else SHORT


def trend_for_side(side: str, entry_mode: str) -> str:
    follow = entry_mode == "follow"
    return SIGNAL_UP if (side == LONG) == follow else SIGNAL_DOWN


def opposite_trend(trend: str) -> str:
    return SIGNAL_DOWN if trend == SIGNAL_UP else SIGNAL_UP


# --- budgeting -------------------------------------------------------------

class BudgetingWaitForEntryState(EntryStateBase):
    def arm(self, triggers: TriggerSet) -> None:
        triggers.add(self.ctx.feed.hook(self._on_trend))
        rs = self.ctx.run_state
        if rs.last_trend_update_time:
            self._evaluate(rs.current_trend, None)

    def _evaluate(self, trend: str, price: Optional[float]) -> None:
        rs = self.ctx.run_state
        triggers = self.triggers
        if triggers is None or triggers.done or rs.curr_position is not None:
            return
        if not rs.trend_fresh_for_entry():
            return
        side = side_for_trend(trend, self.ctx.config.entry_mode)
        if side is None:
            return
        triggers.fire(Trigger(TRIGGER_TREND, price, now_ms(), side))

    def _on_trend(self, update: TrendUpdate) -> None:
        self._evaluate(update.trend, update.price)

    def after_open(self, trigger: Trigger, opened: OpenedTrade) -> None:
        rs = self.ctx.run_state
        entered = trend_for_side(opened.position.side, self.ctx.config.entry_mode)
        rs.resolve_values = [SIGNAL_KANGAROO, opposite_trend(entered)]


class BudgetingWaitForResolveState(ResolveStateBase):
    def arm(self, triggers: TriggerSet, pos: Position) -> None:
        triggers.add(self.ctx.feed.hook(self._on_trend))

    def _on_trend(self, update: TrendUpdate) -> None:
        rs = self.ctx.run_state
        triggers = self.triggers
        if triggers is None or triggers.done or rs.curr_position is None:
            return
        if not rs.trend_fresh_for_exit():
            return
        if update.trend in rs.resolve_values:
            triggers.fire(Trigger(TRIGGER_TREND, update.price, now_ms()))


# --- combo -----------------------------------------------------------------

class ComboWaitForEntryState(EntryStateBase):
    def rule(self, big: str, small: str) -> str:
        rules = self.ctx.config.bet_rules or {}
        return rules.get(big, {}).get(small, RULE_SKIP)

    def arm(self, triggers: TriggerSet) -> None:
        rs = self.ctx.run_state
        if rs.next_force_side is not None:
            side = rs.next_force_side
            rs.next_force_side = None
            self.ctx.notifier.queue_message(f"🔁 Rules flipped to {side.upper()}, re-entering immediately")
            triggers.fire(Trigger(TRIGGER_TREND, None, now_ms(), side))
            return
        triggers.add(self.ctx.feed.hook(self._on_trend))
        if rs.last_trend_update_time:
            self._evaluate(rs.big_trend, rs.small_trend, None)

    def _evaluate(self, big: str, small: str, price: Optional[float]) -> None:
        rs = self.ctx.run_state
        triggers = self.triggers
        if triggers is None or triggers.done or rs.curr_position is not None:
            return
        if not rs.trend_fresh_for_entry():
            return
        rule = self.rule(big, small)
        if rule == RULE_SKIP:
            return
        triggers.fire(Trigger(TRIGGER_TREND, price, now_ms(), rule))

    def _on_trend(self, update: TrendUpdate) -> None:
        self._evaluate(update.big, update.small, update.price)

    def after_open(self, trigger: Trigger, opened: OpenedTrade) -> None:
        rs = self.ctx.run_state
        big, small = rs.big_trend, rs.small_trend
        rs.committed_combo = (big, small)
        rs.combo_records[big][small].entries += 1
        rs.resolve_values = [RULE_SKIP, opposite_side(opened.position.side)]


class ComboWaitForResolveState(ResolveStateBase):
    def rule(self, big: str, small: str) -> str:
        rules = self.ctx.config.bet_rules or {}
        return rules.get(big, {}).get(small, RULE_SKIP)

    def arm(self, triggers: TriggerSet, pos: Position) -> None:
        triggers.add(self.ctx.feed.hook(self._on_trend))

    def _on_trend(self, update: TrendUpdate) -> None:
        rs = self.ctx.run_state
        triggers = self.triggers
        if triggers is None or triggers.done or rs.curr_position is None:
            return
        if not rs.trend_fresh_for_exit():
            return
        rule = self.rule(update.big, update.small)
        if rule not in rs.resolve_values:
            return
        if triggers.fire(Trigger(TRIGGER_TREND, update.price, now_ms())) and rule != RULE_SKIP:
            rs.next_force_side = rule

    def after_settle(self, pos, trig, metrics, liquidated: bool) -> None:
        rs = self.ctx.run_state
        combo = rs.committed_combo
        if combo is not None:
            rec: ComboRecord = rs.combo_records[combo[0]][combo[1]]
            rec.pnl += float(metrics.net_pnl or 0.0)
            if liquidated:
                rec.liquidated_count += 1
        rs.committed_combo = None
        if liquidated:
            rs.next_force_side = None


def combo_records_msg(run_state) -> str:
    lines = ["📊 Combination results (big / small: entries, pnl, liquidations)"]
    for big, row in run_state.combo_records.items():
        for small, rec in row.items():
            if rec.entries:
                lines.append(f"{big} / {small}: {rec.entries}, {rec.pnl:.4f}, {rec.liquidated_count}")
    if len(lines) == 1:
        lines.append("No entries yet")
    return "\n".join(lines)
