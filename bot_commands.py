#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

from typing import List, Optional, Tuple

from bot_utils import icon, position_detail_msg, run_duration
from exchange_ports import LONG, SHORT, Ok, lookup_closed_position, lookup_position
from lifecycle import BotContext, BotState, EntryStateBase, LifecycleMachine, ResolveStateBase
from telegram_notifier import TelegramCommandLoop
from trade_reporting import dilute_points, render_pnl_chart
from trend_states import combo_records_msg

HELP = {
    "full_update": "To get full updated bot information",
    "help": "To get command list information",
    "update_bet_size": "To update the bet size /update_bet_size 1000",
    "pnl_graph": 'To render the full PnL progression chart. Optional: "/pnl_graph dilute 10" to thin data',
    "open_long": "Open a long position now (only while waiting for entry)",
    "open_short": "Open a short position now (only while waiting for entry)",
    "close_position": "Close the active position now",
    "ping": "Check the bot is alive",
    "chat_id": "Show this chat id",
}


def _money(v: float) -> str:
    return f"{v:,.2f}"


def parse_dilute(args: List[str]) -> Tuple[int, Optional[str]]:
    """`[]` -> 1, `["dilute", "10"]` -> 10, `["10"]` -> 10, anything else -> error text."""
    if not args:
        return 1, None
    lowered = [a.lower() for a in args]
    if "dilute" in lowered:
        idx = lowered.index("dilute")
        if idx + 1 >= len(args):
            return 1, 'Please provide a positive number after "dilute".'
        raw = args[idx + 1]
    else:
        raw = args[0]
    try:
        val = float(raw)
    except ValueError:
        if "dilute" not in lowered:
            return 1, 'Unsupported parameter(s). Use "/pnl_graph dilute <positive_number>".'
        return 1, f'"{raw}" is not a valid positive number for dilute.'
    if val <= 0 or val != val:
        return 1, f'"{raw}" is not a valid positive number for dilute.'
    return max(1, int(val)), None


class BotCommands:
    def __init__(
        self,
        ctx: BotContext,
        machine: LifecycleMachine,
        entry: EntryStateBase,
        resolve: ResolveStateBase,
    ):
        self.ctx = ctx
        self.machine = machine
        self.entry = entry
        self.resolve = resolve

    def register(self, loop: TelegramCommandLoop) -> None:
        loop.register("help", self.cmd_help)
        loop.register("full_update", self.cmd_full_update)
        loop.register("update_bet_size", self.cmd_update_bet_size)
        loop.register("pnl_graph", self.cmd_pnl_graph)
        loop.register("open_long", self.cmd_open_long)
        loop.register("open_short", self.cmd_open_short)
        loop.register("close_position", self.cmd_close_position)
        loop.register("ping", self.cmd_ping)
        loop.register("chat_id", self.cmd_chat_id)

    def _reply(self, msg: str) -> None:
        self.ctx.notifier.queue_message(msg)

    async def cmd_help(self, text: str) -> None:
        self._reply("".join(f"\n\n - /{k} => {v}" for k, v in HELP.items()))

    async def _details(self) -> str:
        st = self.machine.state
        if st is BotState.STARTING:
            return "Bot in starting state, preparing bot balances, symbols, leverage"
        if st is BotState.WAIT_FOR_ENTRY:
            return f"Bot is in wait for entry state, waiting for {self.ctx.strategy_name} signal (Up/Down)"

        rs = self.ctx.run_state
        pos = None
        res = await lookup_position(self.ctx.trading, rs.symbol)
        if isinstance(res, Ok):
            pos = res.value
        elif rs.curr_position is not None:
            closed = await lookup_closed_position(self.ctx.trading, rs.symbol, rs.curr_position.id)
            if isinstance(closed, Ok):
                pos = closed.value
        detail = f"\n\n{position_detail_msg(pos)}" if pos is not None else ""
        return f"Bot is in wait for resolve state, monitoring price for exit{detail}"

    async def cmd_full_update(self, text: str) -> None:
        ctx = self.ctx
        rs = ctx.run_state
        cfg = ctx.config
        start = float(rs.start_quote_balance or 0.0)
        curr = float(rs.curr_quote_balance or 0.0)
        total = rs.total_calculated_profit

        days, dur = run_duration(rs.run_start_ts) if rs.run_start_ts else (0.0, "0D 0H0m0s")
        yearly = total * (365.0 / days) if days > 0 else 0.0
        yearly_roi = (yearly / start * 100.0) if start > 0 else 0.0
        total_pct = (total / start * 100.0) if start > 0 else 0.0
        avg_slip = rs.slippage_accumulation / rs.number_of_trades if rs.number_of_trades else 0.0

        journal_line = ""
        if ctx.journal is not None:
            closes = ctx.journal.fetch_closes(since_ts=rs.run_start_ts // 1000)
            wins = sum(1 for _, pnl in closes if pnl > 0)
            if closes:
                journal_line = f"\nJournal closes this run: {len(closes)} (win rate {wins / len(closes) * 100:.1f}%)"

        msg = (
            "=== GENERAL ===\n"
            f"{cfg.describe()}\n\n"
            "=== DETAILS ===\n"
            f"{await self._details()}\n\n"
            "=== BUDGET ===\n"
            f"Start Quote Balance (100%): {_money(start)} {cfg.quote_coin}\n"
            f"Current Quote Balance (100%): {_money(curr)} {cfg.quote_coin}\n\n"
            f"Balance current and start diff: {_money(curr - start)} {cfg.quote_coin}\n"
            f"Calculated actual profit: {_money(total)} {cfg.quote_coin}\n\n"
            "=== ROI ===\n"
            f"Run time: {dur}\n"
            f"Total profit till now: {icon(total >= 0)} {_money(total)} {cfg.quote_coin} ({total_pct:.2f}%) / {dur}\n"
            f"Estimated yearly profit: {_money(yearly)} {cfg.quote_coin} ({yearly_roi:.2f}%)\n\n"
            "=== SLIPPAGE ===\n"
            f"Slippage accumulation: {rs.slippage_accumulation} pip(s)\n"
            f"Number of trades: {rs.number_of_trades}\n"
            f"Average slippage: ~{icon(avg_slip <= 0)} {avg_slip:.5f} pip(s)"
            f"{journal_line}"
        )
        if cfg.variant == "combo":
            msg += f"\n\n{combo_records_msg(rs)}"
        self._reply(msg)

    async def cmd_update_bet_size(self, text: str) -> None:
        parts = text.split()
        if len(parts) < 2:
            self._reply("No parameter specified, please specify parameter")
            return
        try:
            value = float(parts[1])
        except ValueError:
            self._reply("Invalid parameter specified, please specify a number")
            return
        if value <= 0:
            self._reply("Bet size must be positive")
            return
        self.ctx.run_state.bet_size = value
        self._reply(f"Successfully updated bet size to {value} {self.ctx.config.quote_coin}")

    async def cmd_pnl_graph(self, text: str) -> None:
        rs = self.ctx.run_state
        if not rs.pnl_history:
            self._reply("No PnL history recorded yet.")
            return
        every, err = parse_dilute(text.split()[1:])
        if err:
            self._reply(err)
            return
        points = dilute_points(list(rs.pnl_history), every)
        self.ctx.notifier.queue_message(render_pnl_chart(points, title=f"PnL progression ({len(points)} points)"))

    async def cmd_open_long(self, text: str) -> None:
        self._reply(self.entry.request_manual_entry(LONG))

    async def cmd_open_short(self, text: str) -> None:
        self._reply(self.entry.request_manual_entry(SHORT))

    async def cmd_close_position(self, text: str) -> None:
        self._reply(self.resolve.request_manual_close())

    async def cmd_ping(self, text: str) -> None:
        rs = self.ctx.run_state
        _, dur = run_duration(rs.run_start_ts) if rs.run_start_ts else (0.0, "0D 0H0m0s")
        self._reply(f"✅ alive | uptime {dur} | state {self.machine.state.value}")

    async def cmd_chat_id(self, text: str) -> None:
        self._reply(f"chat id: {self.ctx.config.tg_chat}")
