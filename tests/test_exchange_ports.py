from __future__ import annotations

import asyncio

import pytest
import requests

from exchange_ports import (
    LONG,
    SHORT,
    BalanceInfo,
    FillNotConfirmedError,
    FillUpdate,
    NotFound,
    Ok,
    OrderRejectedError,
    OrderRequest,
    TransientError,
    free_balance,
    lookup_closed_position,
    lookup_position,
)
from helpers import NO_WAIT, FakeNotifier
from order_watcher import OrderFillWatcher, opened_position_poll
from paper_exchange import PaperExchange
from pnl_accountant import PnLAccountant
from trade_state import BotRunState


def _paper(price=100.0, leverage=10, **kwargs):
    paper = PaperExchange("BTCUSDT", **kwargs)
    paper.push_price(price)
    asyncio.run(paper.set_leverage("BTCUSDT", leverage))
    return paper


def _buy(qty=1.0, coid="c-open", side="buy", reduce_only=False):
    return OrderRequest("BTCUSDT", side, qty, coid, reduce_only=reduce_only)


# --- paper exchange ---

def test_paper_open_sets_naive_liquidation_price():
    paper = _paper()
    asyncio.run(paper.place_order(_buy()))
    assert paper.position.side == LONG
    assert paper.position.liquidation_price == pytest.approx(90.0)
    assert paper.balance == pytest.approx(1000.0 - 10.0 - 100.0 * 0.00055)

    short = _paper()
    asyncio.run(short.place_order(_buy(side="sell")))
    assert short.position.side == SHORT
    assert short.position.liquidation_price == pytest.approx(110.0)


def test_paper_liquidates_before_listeners_see_the_price():
    paper = _paper()
    asyncio.run(paper.place_order(_buy()))
    seen = []
    paper.hook_price_listener_with_timestamp("BTCUSDT", lambda p, ts: seen.append(paper.position))
    paper.push_price(89.0)
    assert seen == [None]
    closed = paper.history[-1]
    assert closed.is_liquidated
    assert closed.close_price == pytest.approx(90.0)
    assert closed.realized_pnl == pytest.approx(-10.0)


def test_paper_close_reports_pnl_without_fees():
    paper = _paper()
    asyncio.run(paper.place_order(_buy()))
    paper.push_price(102.0)
    asyncio.run(paper.place_order(_buy(coid="c-close", side="sell", reduce_only=True)))
    assert paper.position is None
    assert paper.history[-1].realized_pnl == pytest.approx(2.0)
    fees = 100.0 * 0.00055 + 102.0 * 0.00055
    assert paper.balance == pytest.approx(1000.0 + 2.0 - fees)


def test_paper_rejects_impossible_orders():
    paper = _paper(balance=5.0)
    updates = []
    paper.hook_order_listener(updates.append)
    asyncio.run(paper.place_order(_buy(reduce_only=True, side="sell")))
    asyncio.run(paper.place_order(_buy(qty=1.0, coid="too-big")))
    assert [u.status for u in updates] == ["rejected", "rejected"]
    assert paper.position is None


def test_paper_history_can_be_withheld():
    paper = _paper()
    paper.publish_history = False
    asyncio.run(paper.place_order(_buy()))
    pos_id = paper.position.id
    asyncio.run(paper.place_order(_buy(coid="c-close", side="sell", reduce_only=True)))
    assert isinstance(asyncio.run(lookup_closed_position(paper, "BTCUSDT", pos_id)), NotFound)


# --- lookups ---

class _FlakyTrading:
    def __init__(self, exc):
        self.exc = exc

    async def get_position(self, symbol):
        raise self.exc

    async def get_positions_history(self, symbol, position_id=None):
        raise self.exc


def test_lookup_results():
    paper = _paper()
    assert isinstance(asyncio.run(lookup_position(paper, "BTCUSDT")), NotFound)
    asyncio.run(paper.place_order(_buy()))
    res = asyncio.run(lookup_position(paper, "BTCUSDT"))
    assert isinstance(res, Ok) and res.value.side == LONG
    paper.push_price(101.0)
    moved = asyncio.run(lookup_position(paper, "BTCUSDT"))
    assert moved.value.unrealized_pnl == pytest.approx(1.0)

    transient = asyncio.run(lookup_position(_FlakyTrading(requests.Timeout("slow")), "BTCUSDT"))
    assert isinstance(transient, TransientError)
    with pytest.raises(ValueError):
        asyncio.run(lookup_closed_position(_FlakyTrading(ValueError("bad")), "BTCUSDT", 1))


def test_free_balance_picks_the_coin():
    balances = [BalanceInfo("BTC", 1.0), BalanceInfo("USDT", 250.5, 10.0)]
    assert free_balance(balances, "USDT") == 250.5
    assert free_balance(balances, "ETH") == 0.0


# --- fill watcher ---

class _SilentTrading:
    """Order stream that never says anything."""

    def hook_order_listener(self, cb):
        return lambda: None


def test_fill_arriving_before_wait_is_cached():
    paper = _paper()

    async def scenario():
        watcher = OrderFillWatcher(paper, default_timeout_ms=1000)
        await paper.place_order(_buy(coid="early"))
        return await watcher.wait_for_fill("early")

    fill = asyncio.run(scenario())
    assert fill.client_order_id == "early"
    assert fill.execution_price == 100.0


def test_rejected_order_raises():
    paper = _paper()

    async def scenario():
        watcher = OrderFillWatcher(paper, default_timeout_ms=1000)
        await paper.place_order(_buy(coid="nope", side="sell", reduce_only=True))
        await watcher.wait_for_fill("nope")

    with pytest.raises(OrderRejectedError):
        asyncio.run(scenario())


def test_poll_confirms_when_stream_is_silent():
    answers = [NotFound("x"), TransientError(requests.ConnectionError()), Ok(FillUpdate("c1", 101.0, 5))]
    calls = []

    async def poll():
        calls.append(1)
        return answers.pop(0)

    async def scenario():
        watcher = OrderFillWatcher(_SilentTrading(), poll_interval_sec=0.0, max_poll_attempts=5)
        return await watcher.wait_for_fill("c1", poll=poll)

    fill = asyncio.run(scenario())
    assert fill.execution_price == 101.0
    assert len(calls) == 3


def test_poll_budget_runs_out():
    async def poll():
        return NotFound("x")

    async def scenario():
        watcher = OrderFillWatcher(_SilentTrading(), poll_interval_sec=0.0, max_poll_attempts=3)
        await watcher.wait_for_fill("c2", poll=poll)

    with pytest.raises(FillNotConfirmedError, match="after 3 polls"):
        asyncio.run(scenario())


def test_timeout_has_a_one_second_floor():
    async def scenario():
        watcher = OrderFillWatcher(_SilentTrading())
        loop = asyncio.get_running_loop()
        start = loop.time()
        with pytest.raises(FillNotConfirmedError):
            await watcher.wait_for_fill("c3", timeout_ms=10)
        return loop.time() - start

    assert asyncio.run(scenario()) >= 0.9


def test_duplicate_and_empty_ids_are_refused():
    async def scenario():
        watcher = OrderFillWatcher(_SilentTrading())
        with pytest.raises(ValueError):
            await watcher.wait_for_fill("")
        first = asyncio.ensure_future(watcher.wait_for_fill("dup"))
        await asyncio.sleep(0)
        with pytest.raises(RuntimeError):
            await watcher.wait_for_fill("dup")
        watcher.dispose()
        with pytest.raises(FillNotConfirmedError):
            await first

    asyncio.run(scenario())


def test_opened_position_poll_checks_the_side():
    paper = _paper()
    asyncio.run(paper.place_order(_buy()))
    ok = asyncio.run(opened_position_poll(paper, "BTCUSDT", LONG, "c-open")())
    assert isinstance(ok, Ok)
    assert ok.value.execution_price == 100.0
    wrong = asyncio.run(opened_position_poll(paper, "BTCUSDT", SHORT, "c-open")())
    assert isinstance(wrong, NotFound)


# --- pnl accountant ---

class _ScriptedBalances:
    def __init__(self, values):
        self.values = list(values)
        self.failures = 0

    async def get_balances(self):
        if self.failures:
            self.failures -= 1
            raise requests.Timeout("balance timeout")
        return [BalanceInfo("USDT", self.values.pop(0))]


def test_total_follows_the_wallet():
    trading = _ScriptedBalances([1000.0, 1004.5, 1002.3, 1005.1])
    rs = BotRunState(symbol="BTCUSDT", leverage=10, bet_size=100)
    notifier = FakeNotifier()
    acc = PnLAccountant(rs, trading, notifier, retry_policy=NO_WAIT)

    async def scenario():
        await acc.refresh_balance()
        first = await acc.handle_pnl(5.0, False)
        await acc.handle_pnl(-2.0, False)
        await acc.handle_pnl(3.0, True)
        return first

    first = asyncio.run(scenario())
    assert rs.start_quote_balance == 1000.0
    assert first.balance_delta == pytest.approx(4.5)
    assert first.fee_estimate == pytest.approx(0.5)
    assert rs.total_calculated_profit == pytest.approx(5.1)
    assert len(rs.pnl_history) == 3
    assert notifier.contains("PnL Information (🤯 liquidated)")


def test_balance_fetch_retries_transient_errors():
    trading = _ScriptedBalances([1000.0])
    trading.failures = 1
    rs = BotRunState(symbol="BTCUSDT", leverage=10, bet_size=100)
    notifier = FakeNotifier()
    acc = PnLAccountant(rs, trading, notifier, retry_policy=NO_WAIT)
    assert asyncio.run(acc.refresh_balance()) == 1000.0
    assert len(notifier.messages) == 1


def test_slippage_is_signed():
    rs = BotRunState(symbol="BTCUSDT", leverage=10, bet_size=100)
    acc = PnLAccountant(rs, _ScriptedBalances([]), FakeNotifier())
    acc.record_slippage(0.5, good=False)
    acc.record_slippage(-0.2, good=True)
    assert rs.slippage_accumulation == pytest.approx(0.3)
