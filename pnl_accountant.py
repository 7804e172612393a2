#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Per round-trip accounting.

The running total follows the wallet, not the exchange's reported PnL:

    balance_delta = new_free_balance - previous_free_balance
    fee_impact    = realized_pnl - balance_delta
    total        += realized_pnl - fee_impact

fee_impact is an estimate. Funding payments and any other balance movement
between the two snapshots land in it as well.
"""

from __future__ import annotations

from typing import Optional

from bot_log import log
from bot_utils import fee_aware_pnl_line, icon, now_ms, round_down
from exchange_ports import NotificationPort, TradingPort, free_balance
from retry import RetryPolicy, with_retries
from trade_reporting import render_pnl_chart
from trade_state import BotRunState, TradeMetrics

CHART_MIN_POINTS = 10


class PnLAccountant:
    def __init__(
        self,
        run_state: BotRunState,
        trading: TradingPort,
        notifier: NotificationPort,
        *,
        quote_coin: str = "USDT",
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.rs = run_state
        self.trading = trading
        self.notifier = notifier
        self.quote_coin = quote_coin
        self.retry_policy = retry_policy

    async def fetch_free_balance(self) -> float:
        balances = await with_retries(
            self.trading.get_balances,
            label="get_balances",
            policy=self.retry_policy,
            on_retry=self.notifier.queue_message,
        )
        return free_balance(balances, self.quote_coin)

    async def refresh_balance(self) -> float:
        free = round_down(await self.fetch_free_balance(), 4)
        self.rs.curr_quote_balance = free
        if self.rs.start_quote_balance is None:
            self.rs.start_quote_balance = free
        return free

    def record_slippage(self, diff: float, good: bool) -> str:
        """Signed running slippage: bad adds |diff|, good subtracts it."""
        if good:
            self.rs.slippage_accumulation -= abs(diff)
        else:
            self.rs.slippage_accumulation += abs(diff)
        return icon(good)

    async def handle_pnl(
        self,
        realized_pnl: float,
        is_liquidated: bool,
        slippage_icon: Optional[str] = None,
        slippage: Optional[float] = None,
        time_diff_ms: Optional[int] = None,
        closed_position_id: Optional[int] = None,
    ) -> TradeMetrics:
        prev_balance = float(self.rs.curr_quote_balance or 0.0)
        new_balance = await self.refresh_balance()

        balance_delta = new_balance - prev_balance
        fee_impact = realized_pnl - balance_delta
        self.rs.total_calculated_profit += realized_pnl - fee_impact
        self.rs.record_pnl_point(now_ms())

        metrics = TradeMetrics(
            closed_position_id=closed_position_id,
            gross_pnl=realized_pnl,
            balance_delta=balance_delta,
            fee_estimate=fee_impact,
            net_pnl=balance_delta,
        )
        self.rs.last_trade = metrics
        log("pnl", f"realized={realized_pnl:.4f} delta={balance_delta:.4f} fee_est={fee_impact:.4f} liquidated={is_liquidated}")

        if len(self.rs.pnl_history) >= CHART_MIN_POINTS:
            self._send_chart()

        total = self.rs.total_calculated_profit
        header = "🏁 PnL Information (🤯 liquidated)" if is_liquidated else "🏁 PnL Information"
        msg = (
            f"{header}\n"
            f"{fee_aware_pnl_line(metrics.gross_pnl, metrics.fee_estimate, metrics.net_pnl)}\n"
            f"Total calculated PnL: {icon(total >= 0)} {total:.4f}\n\n"
            f"This run quote balance: {prev_balance:.4f} {self.quote_coin}\n"
            f"Next run quote balance: {new_balance:.4f} {self.quote_coin}"
        )
        if slippage_icon and slippage is not None and time_diff_ms is not None:
            msg += (
                "\n-- Close Slippage: --\n"
                f"Time Diff: {time_diff_ms}ms\n"
                f"Price Diff (pips): {slippage_icon} {slippage}"
            )
        self.notifier.queue_message(msg)
        return metrics

    def _send_chart(self) -> None:
        try:
            self.notifier.queue_message(render_pnl_chart(list(self.rs.pnl_history)))
        except Exception as e:
            self.notifier.queue_message(f"⚠️ Failed to generate PnL progression chart: {e}")
            return
        total = self.rs.total_calculated_profit
        self.notifier.queue_message(
            "📊 PnL Progression Chart\n"
            f"Total resolves: {len(self.rs.pnl_history)}\n"
            f"Current PnL: {icon(total >= 0)} {total:.4f} {self.quote_coin}"
        )
