#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Position lifecycle: Starting -> WaitForEntry -> WaitForResolve -> Starting.

`transition()` is the whole state graph. `LifecycleMachine` drives it: it
awaits the current state's `on_enter()` (which returns the event that ended
the state's work), then its `on_exit()`, and only then moves on.

Everything a state needs comes in through `BotContext`, so tests wire the
machine to a paper exchange and a scripted feed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from bot_config import BotConfig
from bot_log import log, log_error
from bot_utils import (
    client_order_id,
    icon,
    now_ms,
    parse_duration_ms,
    position_detail_msg,
    round_down,
    run_duration,
)
from exchange_ports import (
    LONG,
    ExchangeError,
    MarketDataPort,
    NotificationPort,
    Ok,
    OrderRequest,
    OrderRejectedError,
    Position,
    TradingPort,
    TransientError,
    Unhook,
    lookup_closed_position,
    lookup_position,
)
from order_watcher import OrderFillWatcher, opened_position_poll
from pnl_accountant import PnLAccountant
from retry import RetryPolicy, with_retries
from trade_reporting import TradeJournal
from trade_state import BotRunState, BotStatus, PriceMark, TradeMetrics
from ws_signaling import CLOSE_POSITION, OPEN_LONG, OPEN_SHORT, SignalingServer


class FatalBotError(RuntimeError):
    """The bot cannot continue safely. The process exits after reporting it."""


class BotState(Enum):
    STARTING = "STARTING"
    WAIT_FOR_ENTRY = "WAIT_FOR_ENTRY"
    WAIT_FOR_RESOLVE = "WAIT_FOR_RESOLVE"


class LifecycleEvent(Enum):
    READY = "READY"
    ENTERED = "ENTERED"
    RESOLVED = "RESOLVED"


_TRANSITIONS: Dict[tuple, BotState] = {
    (BotState.STARTING, LifecycleEvent.READY): BotState.WAIT_FOR_ENTRY,
    (BotState.WAIT_FOR_ENTRY, LifecycleEvent.ENTERED): BotState.WAIT_FOR_RESOLVE,
    (BotState.WAIT_FOR_RESOLVE, LifecycleEvent.RESOLVED): BotState.STARTING,
}


def transition(state: BotState, event: LifecycleEvent) -> BotState:
    nxt = _TRANSITIONS.get((state, event))
    if nxt is None:
        raise ValueError(f"no transition from {state.value} on {event.value}")
    return nxt


class LifecycleState(Protocol):
    async def on_enter(self) -> LifecycleEvent:
        ...

    async def on_exit(self) -> None:
        ...


class SignalFeed(Protocol):
    """What the states need from a watcher."""

    def hook(self, cb: Callable[[Any], None]) -> Unhook:
        ...

    def ensure_started(self) -> None:
        ...


@dataclass
class BotContext:
    config: BotConfig
    run_state: BotRunState
    market: MarketDataPort
    trading: TradingPort
    notifier: NotificationPort
    accountant: PnLAccountant
    fill_watcher: OrderFillWatcher
    feed: SignalFeed
    journal: Optional[TradeJournal] = None
    signaling: Optional[SignalingServer] = None
    retry_policy: Optional[RetryPolicy] = None
    strategy_name: str = "breakout"


class LifecycleMachine:
    def __init__(self, states: Dict[BotState, LifecycleState], run_state: BotRunState, initial: BotState = BotState.STARTING):
        missing = [s for s in BotState if s not in states]
        if missing:
            raise ValueError(f"missing handlers for {[s.value for s in missing]}")
        self.states = states
        self.run_state = run_state
        self.state = initial
        self.completed_cycles = 0

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Loop forever, or until `max_cycles` round trips have resolved."""
        while max_cycles is None or self.completed_cycles < max_cycles:
            handler = self.states[self.state]
            log("fsm", f"enter {self.state.value}")
            event = await handler.on_enter()
            await handler.on_exit()
            nxt = transition(self.state, event)
            log("fsm", f"{self.state.value} --{event.value}--> {nxt.value}")
            if self.state is BotState.WAIT_FOR_RESOLVE:
                self.completed_cycles += 1
            self.state = nxt


# --- triggers ------------------------------------------------------------

TRIGGER_SIGNAL = "signal"
TRIGGER_TAKE_PROFIT = "take_profit"
TRIGGER_SUPPORT_RESISTANCE = "support_resistance"
TRIGGER_TRAILING = "trailing_stop"
TRIGGER_TREND = "trend"
TRIGGER_LIQUIDATION = "liquidation"
TRIGGER_MANUAL = "manual"


@dataclass(frozen=True)
class Trigger:
    kind: str
    price: Optional[float] = None
    ts: int = 0
    side: Optional[str] = None
    reference: Optional[float] = None


class TriggerSet:
    """
    A group of listeners racing for one state change. The first `fire()` wins:
    every hook is removed before the winner is handed to `wait()`, and later
    fires are ignored.
    """

    def __init__(self):
        self._unhooks: List[Unhook] = []
        self._fut: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._fut.done()

    def add(self, unhook: Unhook) -> None:
        if self.done:
            unhook()
            return
        self._unhooks.append(unhook)

    def unhook_all(self) -> None:
        while self._unhooks:
            unhook = self._unhooks.pop()
            try:
                unhook()
            except Exception as e:
                log_error(f"unhook failed: {e!r}")

    def fire(self, trigger: Trigger) -> bool:
        if self.done:
            return False
        self.unhook_all()
        self._fut.set_result(trigger)
        return True

    async def wait(self) -> Trigger:
        return await self._fut

    def cancel(self) -> None:
        self.unhook_all()
        if not self.done:
            self._fut.cancel()


# --- order execution -----------------------------------------------------

@dataclass
class OpenedTrade:
    position: Position
    fill_price: float
    fill_time: int


@dataclass
class ClosedTrade:
    record: Position
    mark: Optional[PriceMark] = None


class TradeExecutor:
    """Opens and closes the one position the bot may hold."""

    def __init__(self, ctx: BotContext):
        self.ctx = ctx

    @property
    def _cfg(self) -> BotConfig:
        return self.ctx.config

    def budget(self) -> float:
        return round_down(self.ctx.run_state.bet_size * self._cfg.leverage, 2)

    def _order_qty(self, budget: float, price: float) -> float:
        info = self.ctx.run_state.symbol_info
        precision = info.base_precision if info and info.base_precision is not None else 3
        qty = round_down(budget / price, precision)
        if info and info.max_mkt_order_qty:
            qty = min(qty, float(info.max_mkt_order_qty))
        if qty <= 0:
            raise ExchangeError(f"budget {budget} is below one lot at price {price}")
        if info and info.min_notional and qty * price < info.min_notional:
            raise ExchangeError(f"order notional {qty * price:.2f} below exchange minimum {info.min_notional}")
        return qty

    async def _wait_for_client(self) -> SignalingServer:
        sig = self.ctx.signaling
        if sig is None:
            raise FatalBotError("signaling execution without a signaling server")
        await sig.wait_for_client()
        return sig

    async def open_position(self, side: str) -> OpenedTrade:
        """
        Market-open `side` with bet_size * leverage. Blocks until the fill is
        confirmed. OrderRejectedError / ExchangeError mean nothing was opened;
        an unconfirmed fill is fatal.
        """
        cfg = self._cfg
        rs = self.ctx.run_state
        budget = self.budget()
        coid = client_order_id(cfg.client_order_prefix, "open")
        poll = opened_position_poll(self.ctx.trading, rs.symbol, side, coid)

        if cfg.execution == "signaling":
            sig = await self._wait_for_client()
            await sig.broadcast(OPEN_LONG if side == LONG else OPEN_SHORT, f"{budget:.2f}")
        else:
            price = await self.ctx.market.get_mark_price(rs.symbol)
            qty = self._order_qty(budget, price)
            req = OrderRequest(rs.symbol, "buy" if side == LONG else "sell", qty, coid)
            log("exec", f"open {side} qty={qty} budget={budget} coid={coid}")
            await self.ctx.trading.place_order(req)

        try:
            fill = await self.ctx.fill_watcher.wait_for_fill(coid, poll=poll, timeout_ms=cfg.order_timeout_ms)
        except OrderRejectedError:
            raise
        except Exception as e:
            raise FatalBotError(f"open {side} {rs.symbol}: {e}") from e

        pos = await self._load_open_position()
        return OpenedTrade(pos, float(fill.execution_price or pos.avg_price), fill.update_time)

    async def _load_open_position(self) -> Position:
        rs = self.ctx.run_state
        cfg = self._cfg
        for attempt in range(1, cfg.confirm_attempts + 1):
            res = await lookup_position(self.ctx.trading, rs.symbol)
            if isinstance(res, Ok):
                return res.value
            log("exec", f"position lookup {attempt}/{cfg.confirm_attempts}: {res}")
            await asyncio.sleep(cfg.confirm_interval_sec)
        raise FatalBotError(f"order filled but no open {rs.symbol} position found")

    async def close_position(self, pos: Position) -> ClosedTrade:
        cfg = self._cfg
        rs = self.ctx.run_state
        mark = PriceMark(await self.ctx.market.get_mark_price(rs.symbol), now_ms())
        rs.resolve_mark = mark

        if cfg.execution == "signaling":
            sig = await self._wait_for_client()
            await sig.broadcast(CLOSE_POSITION)
        else:
            req = OrderRequest(
                rs.symbol,
                "sell" if pos.side == LONG else "buy",
                pos.size,
                client_order_id(cfg.client_order_prefix, "close"),
                reduce_only=True,
            )
            log("exec", f"close {pos.side} id={pos.id} qty={pos.size} coid={req.client_order_id}")
            try:
                await with_retries(
                    lambda: self.ctx.trading.place_order(req),
                    label="close order",
                    policy=self.ctx.retry_policy,
                    on_retry=self.ctx.notifier.queue_message,
                )
            except Exception as e:
                raise FatalBotError(f"close order for position {pos.id} failed: {e}") from e

        record = await self.confirm_closed(pos, "close")
        return ClosedTrade(record, mark)

    async def confirm_closed(self, pos: Position, label: str) -> Position:
        """Poll position history until the closed record of `pos` shows up."""
        cfg = self._cfg
        rs = self.ctx.run_state
        for attempt in range(1, cfg.confirm_attempts + 1):
            await asyncio.sleep(cfg.confirm_interval_sec)
            res = await lookup_closed_position(self.ctx.trading, rs.symbol, pos.id)
            if isinstance(res, Ok):
                return res.value
            if isinstance(res, TransientError):
                log("exec", f"{label} confirm {attempt}/{cfg.confirm_attempts}: {res.error!r}")
            else:
                log("exec", f"{label} confirm {attempt}/{cfg.confirm_attempts}: not in history yet")
        raise FatalBotError(
            f"{label}: no closed record for position {pos.id} after {cfg.confirm_attempts} attempts"
        )

    async def confirm_liquidation(self, pos: Position) -> ClosedTrade:
        rs = self.ctx.run_state
        self.ctx.notifier.queue_message(
            f"⚠️ Price reached liquidation price {pos.liquidation_price}, checking position history..."
        )
        record = await self.confirm_closed(pos, "liquidation")
        return ClosedTrade(record, rs.resolve_mark)

    async def settle(
        self,
        pos: Position,
        closed: ClosedTrade,
        *,
        is_liquidated: bool,
        reason: str,
    ) -> TradeMetrics:
        """Book a closed position: counters, slippage, journal, PnL messages."""
        rs = self.ctx.run_state
        record = closed.record
        close_price = record.close_price if record.close_price is not None else pos.avg_price

        slippage_icon = None
        slippage = None
        time_diff = None
        if closed.mark is not None and not is_liquidated:
            diff = closed.mark.price - close_price
            good = diff >= 0 if pos.side == LONG else diff <= 0
            slippage_icon = self.ctx.accountant.record_slippage(diff, good)
            prec = rs.price_precision
            slippage = round(diff, prec) if prec is not None else diff
            time_diff = int((record.update_time or now_ms()) - closed.mark.ts)

        rs.number_of_trades += 1
        rs.last_exit_time = now_ms()
        rs.curr_position = None
        rs.reset_trailing()

        if is_liquidated:
            rs.liquidation_sleep_finish_ts = now_ms() + parse_duration_ms(self._cfg.sleep_after_liquidation)
            self.ctx.notifier.queue_message(
                f"🤯 Position {pos.id} liquidated. Sleeping for {self._cfg.sleep_after_liquidation}"
            )

        metrics = await self.ctx.accountant.handle_pnl(
            record.realized_pnl,
            is_liquidated,
            slippage_icon,
            slippage,
            time_diff,
            closed_position_id=record.id,
        )
        if self.ctx.journal is not None:
            self.ctx.journal.log_event(
                "LIQUIDATED" if is_liquidated else "CLOSE",
                pos,
                self.ctx.strategy_name,
                exit_px=close_price,
                pnl=metrics.net_pnl,
                fees=metrics.fee_estimate,
                reason=reason,
            )
        self.ctx.notifier.queue_message(self.summary_message(record, reason))
        return metrics

    def summary_message(self, record: Position, reason: str) -> str:
        rs = self.ctx.run_state
        days, dur = run_duration(rs.run_start_ts)
        start = rs.start_quote_balance or 0.0
        total = rs.total_calculated_profit
        roi = (total / start * 100.0) if start > 0 else 0.0
        return (
            f"📄 Position closed ({reason})\n"
            f"{position_detail_msg(record)}\n\n"
            f"Run duration: {dur}\n"
            f"Trades: {rs.number_of_trades}\n"
            f"Balance: {rs.curr_quote_balance} {self._cfg.quote_coin}\n"
            f"ROI: {icon(roi >= 0)} {roi:.2f}%"
            + (f" (~{roi / days:.2f}%/day)" if days >= 1 else "")
        )


def liquidation_hit(pos: Position, price: float) -> bool:
    liq = pos.liquidation_price
    if not liq or liq <= 0:
        return False
    return price <= liq if pos.side == LONG else price >= liq


def was_liquidated(pos: Position, record: Position) -> bool:
    if record.is_liquidated is not None:
        return bool(record.is_liquidated)
    liq = pos.liquidation_price
    if not liq or record.close_price is None:
        return False
    return record.close_price <= liq if pos.side == LONG else record.close_price >= liq


def take_profit_price(pos: Position, tp_pct: float) -> Optional[float]:
    if tp_pct <= 0:
        return None
    if pos.side == LONG:
        return pos.avg_price * (1 + tp_pct / 100.0)
    return pos.avg_price * (1 - tp_pct / 100.0)


def take_profit_hit(pos: Position, tp_price: Optional[float], price: float) -> bool:
    if tp_price is None:
        return False
    return price >= tp_price if pos.side == LONG else price <= tp_price


# --- shared states -------------------------------------------------------

class StartingState:
    """Cooldown after liquidation, balance and leverage checks, watcher start."""

    def __init__(self, ctx: BotContext, *, sleep_poll_sec: float = 5.0):
        self.ctx = ctx
        self.sleep_poll_sec = sleep_poll_sec
        self._announced = False

    async def _sleep_after_liquidation(self) -> None:
        rs = self.ctx.run_state
        until = rs.liquidation_sleep_finish_ts
        if not until or now_ms() >= until:
            return
        rs.is_sleeping = True
        self.ctx.notifier.queue_message(
            f"😴 Sleeping after liquidation for {(until - now_ms()) / 60000:.1f} more minutes"
        )
        try:
            while now_ms() < until:
                await asyncio.sleep(min(self.sleep_poll_sec, max(0.0, (until - now_ms()) / 1000.0)))
        finally:
            rs.is_sleeping = False
        rs.liquidation_sleep_finish_ts = None
        self.ctx.notifier.queue_message("⏰ Woke up after liquidation sleep")

    async def on_enter(self) -> LifecycleEvent:
        ctx = self.ctx
        cfg = ctx.config
        rs = ctx.run_state
        rs.status = BotStatus.STARTING
        if not rs.run_start_ts:
            rs.run_start_ts = now_ms()

        await self._sleep_after_liquidation()

        try:
            free = await ctx.accountant.refresh_balance()
        except Exception as e:
            raise FatalBotError(f"cannot read balances: {e}") from e
        if free < rs.bet_size:
            raise FatalBotError(
                f"Insufficient balance: {free} {cfg.quote_coin} free, bet size is {rs.bet_size}"
            )

        try:
            ok = await with_retries(
                lambda: ctx.trading.set_leverage(rs.symbol, cfg.leverage),
                label="set_leverage",
                policy=ctx.retry_policy,
                on_retry=ctx.notifier.queue_message,
            )
        except Exception as e:
            raise FatalBotError(f"set leverage X{cfg.leverage} failed: {e}") from e
        if not ok:
            raise FatalBotError(f"exchange refused leverage X{cfg.leverage} for {rs.symbol}")

        if rs.symbol_info is None:
            try:
                rs.symbol_info = await with_retries(
                    lambda: ctx.trading.get_symbol_info(rs.symbol),
                    label="get_symbol_info",
                    policy=ctx.retry_policy,
                )
            except Exception as e:
                raise FatalBotError(f"cannot load {rs.symbol} instrument info: {e}") from e

        ctx.feed.ensure_started()

        if not self._announced:
            self._announced = True
            ctx.notifier.queue_message(
                "🤖 Bot started\n"
                f"{cfg.describe()}\n\n"
                f"Start balance: {rs.start_quote_balance} {cfg.quote_coin}\n"
                f"Dry run: {cfg.dry_run}"
            )
        return LifecycleEvent.READY

    async def on_exit(self) -> None:
        return None


class EntryStateBase:
    """
    Common WaitForEntry loop. Subclasses hook their listeners in `arm()` and
    call `self.triggers.fire(...)` with the side to open.
    """

    status = BotStatus.WAIT_FOR_ENTRY

    def __init__(self, ctx: BotContext, executor: Optional[TradeExecutor] = None):
        self.ctx = ctx
        self.executor = executor or TradeExecutor(ctx)
        self.triggers: Optional[TriggerSet] = None

    def arm(self, triggers: TriggerSet) -> None:
        raise NotImplementedError

    def after_open(self, trigger: Trigger, opened: OpenedTrade) -> None:
        """Variant bookkeeping once the position is live."""

    def request_manual_entry(self, side: str) -> str:
        rs = self.ctx.run_state
        if rs.curr_position is not None:
            return "There is already an active position"
        if self.triggers is None or self.triggers.done:
            return f"Bot is not waiting for entry (status: {rs.status})"
        self.triggers.fire(Trigger(TRIGGER_MANUAL, ts=now_ms(), side=side))
        return f"Opening {side} position..."

    async def on_enter(self) -> LifecycleEvent:
        rs = self.ctx.run_state
        rs.status = self.status
        while True:
            triggers = TriggerSet()
            self.triggers = triggers
            self.arm(triggers)
            try:
                trig = await triggers.wait()
            finally:
                triggers.unhook_all()
            if rs.curr_position is not None:
                log("entry", f"ignoring {trig.kind} trigger, position already active")
                return LifecycleEvent.ENTERED
            side = trig.side or LONG
            self.ctx.notifier.queue_message(
                f"🚀 Entry trigger ({trig.kind}): opening {side}" + (f" at ~{trig.price}" if trig.price else "")
            )
            rs.entry_mark = PriceMark(trig.price or 0.0, trig.ts or now_ms())
            try:
                opened = await self.executor.open_position(side)
            except (OrderRejectedError, ExchangeError) as e:
                # nothing opened: wait for a fresh signal before the next try
                rs.last_exit_time = now_ms()
                log_error(f"open {side} failed: {e}")
                self.ctx.notifier.queue_message(f"❌ Failed to open {side} position: {e}")
                continue
            self._book_open(trig, opened)
            return LifecycleEvent.ENTERED

    def _book_open(self, trig: Trigger, opened: OpenedTrade) -> None:
        rs = self.ctx.run_state
        pos = opened.position
        rs.curr_position = pos
        rs.number_of_trades += 1
        rs.last_entry_time = now_ms()
        rs.reset_trailing()

        msg = f"✅ Position opened\n{position_detail_msg(pos)}"
        if trig.reference is not None:
            diff = pos.avg_price - trig.reference if pos.side == LONG else trig.reference - pos.avg_price
            good = diff <= 0
            mark_icon = self.ctx.accountant.record_slippage(diff, good)
            prec = rs.price_precision
            shown = round(diff, prec) if prec is not None else diff
            time_diff = opened.fill_time - (rs.entry_mark.ts if rs.entry_mark else opened.fill_time)
            msg += (
                "\n-- Open Slippage: --\n"
                f"Time Diff: {time_diff}ms\n"
                f"Price Diff (pips): {mark_icon} {shown}"
            )
        self.after_open(trig, opened)
        if self.ctx.journal is not None:
            self.ctx.journal.log_event("OPEN", pos, self.ctx.strategy_name, reason=trig.kind)
        self.ctx.notifier.queue_message(msg)

    async def on_exit(self) -> None:
        if self.triggers is not None:
            self.triggers.cancel()
            self.triggers = None


class ResolveStateBase:
    """
    Common WaitForResolve loop. The tick listener shared by every variant
    covers liquidation and take-profit; subclasses add their own exits in
    `arm()` / `check_tick()`.
    """

    status = BotStatus.WAIT_FOR_RESOLVE

    def __init__(self, ctx: BotContext, executor: Optional[TradeExecutor] = None):
        self.ctx = ctx
        self.executor = executor or TradeExecutor(ctx)
        self.triggers: Optional[TriggerSet] = None
        self._tp_price: Optional[float] = None

    def arm(self, triggers: TriggerSet, pos: Position) -> None:
        """Extra listeners besides the price feed."""

    def check_tick(self, pos: Position, price: float, ts: int) -> Optional[Trigger]:
        return None

    def after_settle(self, pos: Position, trig: Trigger, metrics: TradeMetrics, liquidated: bool) -> None:
        """Variant bookkeeping after the close is booked."""

    def request_manual_close(self) -> str:
        rs = self.ctx.run_state
        if rs.curr_position is None:
            return "There is no active position"
        if self.triggers is None or self.triggers.done:
            return "Position is already being closed"
        self.triggers.fire(Trigger(TRIGGER_MANUAL, ts=now_ms()))
        return "Closing position..."

    def _on_tick(self, price: float, ts: int) -> None:
        rs = self.ctx.run_state
        pos = rs.curr_position
        triggers = self.triggers
        if pos is None or triggers is None or triggers.done:
            return
        if liquidation_hit(pos, price):
            rs.resolve_mark = PriceMark(price, ts)
            triggers.fire(Trigger(TRIGGER_LIQUIDATION, price, ts))
            return
        if take_profit_hit(pos, self._tp_price, price):
            triggers.fire(Trigger(TRIGGER_TAKE_PROFIT, price, ts))
            return
        trig = self.check_tick(pos, price, ts)
        if trig is not None:
            triggers.fire(trig)

    async def on_enter(self) -> LifecycleEvent:
        rs = self.ctx.run_state
        rs.status = self.status
        pos = rs.curr_position
        if pos is None:
            raise FatalBotError("WaitForResolve entered without an active position")

        self._tp_price = take_profit_price(pos, self.ctx.config.take_profit_pct)
        triggers = TriggerSet()
        self.triggers = triggers
        triggers.add(self.ctx.market.hook_price_listener_with_timestamp(rs.symbol, self._on_tick))
        self.arm(triggers, pos)
        try:
            trig = await triggers.wait()
        finally:
            triggers.unhook_all()

        if trig.kind == TRIGGER_LIQUIDATION:
            closed = await self.executor.confirm_liquidation(pos)
            liquidated = was_liquidated(pos, closed.record)
            metrics = await self.executor.settle(pos, closed, is_liquidated=liquidated, reason=trig.kind)
        else:
            self.ctx.notifier.queue_message(f"🔔 Exit trigger ({trig.kind}) at ~{trig.price}, closing {pos.side}")
            closed = await self.executor.close_position(pos)
            liquidated = False
            metrics = await self.executor.settle(pos, closed, is_liquidated=False, reason=trig.kind)
        self.after_settle(pos, trig, metrics, liquidated)
        return LifecycleEvent.RESOLVED

    async def on_exit(self) -> None:
        if self.triggers is not None:
            self.triggers.cancel()
            self.triggers = None


def build_machine(
    ctx: BotContext,
    entry: EntryStateBase,
    resolve: ResolveStateBase,
    starting: Optional[StartingState] = None,
) -> LifecycleMachine:
    states: Dict[BotState, LifecycleState] = {
        BotState.STARTING: starting or StartingState(ctx),
        BotState.WAIT_FOR_ENTRY: entry,
        BotState.WAIT_FOR_RESOLVE: resolve,
    }
    return LifecycleMachine(states, ctx.run_state)

