#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Entry point: wires config, exchange, watcher and states, then runs the bot.

    python bot_runner.py          # settings from .env / environment

DRY_RUN=1 (default) keeps Bybit for market data only and trades against an
in-memory paper exchange.
"""

from __future__ import annotations

import asyncio
import sys
import traceback
from typing import Awaitable, Callable, List, Optional, Tuple

from bot_commands import BotCommands
from bot_config import BotConfig, ConfigError
from bot_log import log, log_error
from breakout_states import BreakoutWaitForEntryState, BreakoutWaitForResolveState
from bybit_client import BybitExchange, BybitRest
from lifecycle import (
    BotContext,
    EntryStateBase,
    FatalBotError,
    LifecycleMachine,
    ResolveStateBase,
    build_machine,
)
from order_watcher import OrderFillWatcher
from paper_exchange import PaperExchange
from pnl_accountant import PnLAccountant
from retry import RetryPolicy
from strategies.breakout_signal import BreakoutTrendClassifier
from telegram_notifier import TelegramCommandLoop, TelegramNotifier
from trade_reporting import TradeJournal
from trade_state import BotRunState
from trend_states import (
    BudgetingWaitForEntryState,
    BudgetingWaitForResolveState,
    ComboWaitForEntryState,
    ComboWaitForResolveState,
)
from trend_watcher import BreakoutTrendWatcher, TrendClassifierWatcher
from ws_signaling import SignalingServer

RESTART_DELAY_SEC = 3.0


async def runner(coro_fn: Callable[[], Awaitable[None]], title: str, notifier: Optional[TelegramNotifier] = None) -> None:
    """Keep a background loop alive: log the crash, notify, restart."""
    while True:
        try:
            await coro_fn()
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            msg = f"{title} crash: {e!r}\n{traceback.format_exc()}"
            print(msg)
            log_error(msg)
            if notifier is not None:
                notifier.queue_message(f"🧯 {title} crashed. See errors.log")
            await asyncio.sleep(RESTART_DELAY_SEC)


def build_states(ctx: BotContext) -> Tuple[EntryStateBase, ResolveStateBase]:
    variant = ctx.config.variant
    if variant == "breakout":
        return BreakoutWaitForEntryState(ctx), BreakoutWaitForResolveState(ctx)
    if variant == "budgeting":
        return BudgetingWaitForEntryState(ctx), BudgetingWaitForResolveState(ctx)
    return ComboWaitForEntryState(ctx), ComboWaitForResolveState(ctx)


class BotOrchestrator:
    def __init__(self, cfg: BotConfig):
        self.cfg = cfg
        self.rs = BotRunState(symbol=cfg.symbol, leverage=cfg.leverage, bet_size=cfg.bet_size)
        self.notifier = TelegramNotifier(cfg.tg_token, cfg.tg_chat)
        self.retry_policy = RetryPolicy()

        self.bybit = BybitExchange(BybitRest(cfg.bybit_key, cfg.bybit_secret, cfg.bybit_base))
        self.paper: Optional[PaperExchange] = None
        if cfg.dry_run:
            self.paper = PaperExchange(
                cfg.symbol,
                balance=cfg.dry_run_balance,
                coin=cfg.quote_coin,
                source=self.bybit,
            )
            self.paper.attach_source()
            market, trading = self.paper, self.paper
        else:
            market, trading = self.bybit, self.bybit

        self._notifier_task: Optional[asyncio.Task] = None
        self.signaling: Optional[SignalingServer] = None
        if cfg.signaling_enabled:
            self.signaling = SignalingServer(
                cfg.signaling_port,
                self.notifier,
                on_count_change=self._on_clients,
            )

        if cfg.variant == "breakout":
            feed = BreakoutTrendWatcher(market, self.rs, cfg, self.notifier, self.signaling)
        else:
            feed = TrendClassifierWatcher(
                market,
                self.rs,
                cfg,
                self.notifier,
                self.signaling,
                classifier=BreakoutTrendClassifier(cfg.signal),
                combo=cfg.variant == "combo",
            )
        self.feed = feed

        journal = TradeJournal(cfg.trade_db_path)
        journal.init()

        self.ctx = BotContext(
            config=cfg,
            run_state=self.rs,
            market=market,
            trading=trading,
            notifier=self.notifier,
            accountant=PnLAccountant(
                self.rs, trading, self.notifier, quote_coin=cfg.quote_coin, retry_policy=self.retry_policy
            ),
            fill_watcher=OrderFillWatcher(
                trading,
                default_timeout_ms=cfg.order_timeout_ms,
                poll_interval_sec=cfg.confirm_interval_sec,
                max_poll_attempts=cfg.confirm_attempts,
            ),
            feed=feed,
            journal=journal,
            signaling=self.signaling,
            retry_policy=self.retry_policy,
            strategy_name=cfg.variant,
        )
        self.entry, self.resolve = build_states(self.ctx)
        self.machine: LifecycleMachine = build_machine(self.ctx, self.entry, self.resolve)
        self.commands = TelegramCommandLoop(self.notifier)
        BotCommands(self.ctx, self.machine, self.entry, self.resolve).register(self.commands)

    def _on_clients(self, n: int) -> None:
        self.rs.connected_clients = n

    def background(self) -> List[asyncio.Task]:
        cfg = self.cfg
        tasks = [
            asyncio.create_task(runner(lambda: self.bybit.run_public_stream([cfg.symbol]), "BYBIT_PUBLIC", self.notifier)),
        ]
        if not cfg.dry_run and cfg.execution == "api":
            tasks.append(asyncio.create_task(runner(self.bybit.run_private_stream, "BYBIT_PRIVATE", self.notifier)))
        if cfg.tg_commands_enable:
            tasks.append(asyncio.create_task(runner(self.commands.run, "TG_CMD", self.notifier)))
        return tasks

    async def run(self) -> None:
        if self.signaling is not None:
            await self.signaling.start()
        # notifier keeps draining after a fatal error so shutdown() can flush
        self._notifier_task = asyncio.create_task(self.notifier.run())
        tasks = self.background()
        try:
            await self.machine.run()
        finally:
            stop = getattr(self.feed, "stop", None)
            if stop is not None:
                stop()
            for t in tasks:
                t.cancel()
            if self.signaling is not None:
                await self.signaling.stop()

    async def shutdown(self, reason: str) -> None:
        self.notifier.queue_message(f"🛑 BOT STOPPED: {reason}")
        await self.notifier.flush()


async def run_until_stopped(bot) -> None:
    """Every error that ends the run is logged and pushed as "BOT STOPPED" before it propagates."""
    try:
        await bot.run()
    except FatalBotError as e:
        log_error(f"fatal: {e!r}\n{traceback.format_exc()}")
        await bot.shutdown(str(e))
        raise
    except Exception as e:
        # lookup, balance or order errors the states let through
        log_error(f"unexpected stop: {e!r}\n{traceback.format_exc()}")
        await bot.shutdown(f"{type(e).__name__}: {e}")
        raise


async def main_async(cfg: BotConfig) -> None:
    await run_until_stopped(BotOrchestrator(cfg))


def main() -> None:
    try:
        cfg = BotConfig.from_env()
    except ConfigError as e:
        log_error(f"config error: {e}")
        print(f"[config] {e}")
        sys.exit(-1)

    log("main", f"Starting {cfg.variant} bot on {cfg.symbol} | DRY_RUN={'ON' if cfg.dry_run else 'OFF'}")
    print(cfg.describe())
    try:
        asyncio.run(main_async(cfg))
    except Exception as e:
        print(f"[fatal] {e!r}")
        sys.exit(-1)
    except KeyboardInterrupt:
        log("main", "stopped by user")


if __name__ == "__main__":
    main()
