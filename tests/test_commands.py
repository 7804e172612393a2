from __future__ import annotations

import asyncio

import pytest

import bot_runner
from bot_commands import BotCommands, parse_dilute
from bot_runner import BotOrchestrator, build_states, run_until_stopped, runner
from bot_utils import now_ms
from breakout_states import BreakoutWaitForEntryState, BreakoutWaitForResolveState
from exchange_ports import ExchangeError
from helpers import FakeNotifier, armed, make_config, make_harness, wait_until
from strategies.signals import TRENDS
from telegram_notifier import TelegramCommandLoop, TelegramNotifier
from trade_reporting import TradeJournal, dilute_points, render_pnl_chart
from trend_states import RULE_SKIP, BudgetingWaitForEntryState, ComboWaitForResolveState


def _commands(**cfg):
    h = make_harness(make_config(**cfg), BreakoutWaitForEntryState, BreakoutWaitForResolveState)
    return h, BotCommands(h.ctx, h.machine, h.entry, h.resolve)


@pytest.mark.parametrize(
    "args,expected",
    [
        ([], 1),
        (["dilute", "10"], 10),
        (["10"], 10),
        (["DILUTE", "2.7"], 2),
    ],
)
def test_parse_dilute(args, expected):
    assert parse_dilute(args) == (expected, None)


@pytest.mark.parametrize("args", [["dilute"], ["dilute", "-3"], ["dilute", "abc"], ["lots"], ["0"]])
def test_parse_dilute_errors(args):
    every, err = parse_dilute(args)
    assert every == 1
    assert err


def test_dilute_points_keeps_the_ends():
    pts = [(i, float(i)) for i in range(7)]
    assert dilute_points(pts, 3) == [(0, 0.0), (3, 3.0), (6, 6.0)]
    assert dilute_points(pts, 1) == pts


def test_update_bet_size_replies():
    h, cmds = _commands()

    async def scenario():
        await cmds.cmd_update_bet_size("/update_bet_size")
        await cmds.cmd_update_bet_size("/update_bet_size lots")
        await cmds.cmd_update_bet_size("/update_bet_size -5")
        await cmds.cmd_update_bet_size("/update_bet_size 250")

    asyncio.run(scenario())
    assert h.notifier.texts() == [
        "No parameter specified, please specify parameter",
        "Invalid parameter specified, please specify a number",
        "Bet size must be positive",
        "Successfully updated bet size to 250.0 USDT",
    ]
    assert h.rs.bet_size == 250.0


def test_pnl_graph_needs_history():
    h, cmds = _commands()
    asyncio.run(cmds.cmd_pnl_graph("/pnl_graph"))
    assert h.notifier.texts() == ["No PnL history recorded yet."]

    h.rs.pnl_history.extend([(1_700_000_000_000 + i * 60_000, float(i)) for i in range(5)])
    asyncio.run(cmds.cmd_pnl_graph("/pnl_graph dilute 2"))
    images = [m for m in h.notifier.messages if isinstance(m, bytes)]
    assert len(images) == 1
    assert images[0].startswith(b"\x89PNG")

    asyncio.run(cmds.cmd_pnl_graph("/pnl_graph dilute"))
    assert h.notifier.contains('positive number after "dilute"')


def test_render_pnl_chart_is_png():
    assert render_pnl_chart([(0, 0.0), (60_000, 1.5)]).startswith(b"\x89PNG")


def test_full_update_while_starting():
    h, cmds = _commands()
    asyncio.run(cmds.cmd_full_update("/full_update"))
    text = h.notifier.texts()[-1]
    for section in ("=== GENERAL ===", "=== DETAILS ===", "=== BUDGET ===", "=== ROI ===", "=== SLIPPAGE ==="):
        assert section in text
    assert "Bot in starting state" in text
    assert "Combination results" not in text


def test_full_update_for_combo_lists_records():
    rules = {big: {small: RULE_SKIP for small in TRENDS} for big in TRENDS}
    h, cmds = _commands(variant="combo", bet_rules=rules)
    asyncio.run(cmds.cmd_full_update("/full_update"))
    assert "Combination results" in h.notifier.texts()[-1]


def test_manual_round_trip_through_commands(tmp_path):
    h, cmds = _commands()
    journal = TradeJournal(str(tmp_path / "trades.db"))
    journal.init()
    h.ctx.journal = journal

    async def scenario():
        task = asyncio.create_task(h.machine.run(max_cycles=1))
        await cmds.cmd_close_position("/close_position")
        await wait_until(lambda: armed(h.entry))
        await cmds.cmd_open_short("/open_short")
        await wait_until(lambda: armed(h.resolve))
        await cmds.cmd_open_long("/open_long")
        await cmds.cmd_full_update("/full_update")
        await cmds.cmd_ping("/ping")
        await cmds.cmd_close_position("/close_position")
        await asyncio.wait_for(task, 3)
        await cmds.cmd_close_position("/close_position")
        await cmds.cmd_full_update("/full_update")

    asyncio.run(scenario())
    texts = h.notifier.texts()
    assert "There is no active position" in texts
    assert "Opening short position..." in texts
    assert "There is already an active position" in texts
    assert "Closing position..." in texts
    assert texts.count("There is no active position") == 2
    assert h.notifier.contains("Position closed (manual)")
    assert h.notifier.contains("monitoring price for exit\n\nID:")
    assert h.notifier.contains("state WAIT_FOR_RESOLVE")
    assert h.notifier.contains("Journal closes this run: 1")
    assert len(journal.fetch_closes()) == 1


def test_command_loop_dispatch():
    notifier = FakeNotifier()
    loop = TelegramCommandLoop(notifier)
    seen = []

    async def echo(text):
        seen.append(text)

    async def broken(text):
        raise RuntimeError("boom")

    loop.register("/Echo", echo)
    loop.register("broken", broken)

    async def scenario():
        await loop.dispatch("/echo@my_bot one two")
        await loop.dispatch("  /ECHO  ")
        await loop.dispatch("hello there")
        await loop.dispatch("/nope")
        await loop.dispatch("/broken")

    asyncio.run(scenario())
    assert seen == ["/echo@my_bot one two", "/ECHO"]
    assert notifier.texts() == ["Unknown command. /help", "❌ /broken failed: boom"]


def test_commands_register_every_handler():
    h, cmds = _commands()
    loop = TelegramCommandLoop(h.notifier)
    cmds.register(loop)
    assert set(loop.handlers) == {
        "help", "full_update", "update_bet_size", "pnl_graph",
        "open_long", "open_short", "close_position", "ping", "chat_id",
    }
    asyncio.run(loop.dispatch("/help"))
    assert h.notifier.contains("/update_bet_size")


# --- telegram delivery ---

class _Resp:
    def __init__(self, status, payload=None):
        self.status_code = status
        self._payload = payload or {}
        self.text = str(payload)

    def json(self):
        return self._payload


class _Session:
    def __init__(self, responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, **kwargs):
        self.posts.append((url, kwargs))
        return self.responses.pop(0)


def test_notifier_disabled_without_credentials():
    notifier = TelegramNotifier(None, None, session=_Session([]))
    notifier.queue_message("hello")
    assert notifier.pending == 0


def test_notifier_backs_off_on_429_and_keeps_order():
    session = _Session([_Resp(429, {"parameters": {"retry_after": 0.01}}), _Resp(200), _Resp(200)])
    notifier = TelegramNotifier("tok", "42", spacing_sec=0.0, session=session)
    notifier.queue_message("first")
    notifier.queue_message(b"\x89PNGfake")

    async def scenario():
        task = asyncio.create_task(notifier.run())
        await wait_until(lambda: notifier.pending == 0)
        task.cancel()

    asyncio.run(scenario())
    urls = [u for u, _ in session.posts]
    assert urls[0].endswith("/sendMessage") and urls[1].endswith("/sendMessage")
    assert urls[2].endswith("/sendPhoto")
    assert session.posts[0][1]["json"] == {"chat_id": "42", "text": "first"}


# --- runner ---

def test_build_states_by_variant():
    for variant, entry_cls in (("breakout", BreakoutWaitForEntryState), ("budgeting", BudgetingWaitForEntryState)):
        h = make_harness(make_config(variant=variant), BreakoutWaitForEntryState, BreakoutWaitForResolveState)
        entry, _ = build_states(h.ctx)
        assert type(entry) is entry_cls
    rules = {big: {small: RULE_SKIP for small in TRENDS} for big in TRENDS}
    h = make_harness(make_config(variant="combo", bet_rules=rules), BreakoutWaitForEntryState, BreakoutWaitForResolveState)
    _, resolve = build_states(h.ctx)
    assert type(resolve) is ComboWaitForResolveState


def test_runner_restarts_crashed_tasks(monkeypatch):
    monkeypatch.setattr(bot_runner, "RESTART_DELAY_SEC", 0.0)
    calls = []
    notifier = FakeNotifier()

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("stream dropped")

    asyncio.run(runner(flaky, "PUBLIC_WS", notifier))
    assert len(calls) == 3
    assert notifier.texts() == ["🧯 PUBLIC_WS crashed. See errors.log"] * 2


class _PaperBot:
    """Orchestrator surface over a paper harness."""

    shutdown = BotOrchestrator.shutdown

    def __init__(self, harness):
        self.notifier = harness.notifier
        self.machine = harness.machine

    async def run(self):
        await self.machine.run(max_cycles=1)


def test_exchange_error_on_close_confirmation_stops_the_bot_loudly():
    h = make_harness(make_config(take_profit_pct=1.0), BreakoutWaitForEntryState, BreakoutWaitForResolveState)

    async def broken_history(symbol, position_id=None):
        raise ExchangeError("Illegal category", ret_code="10001")

    h.paper.get_positions_history = broken_history

    async def scenario():
        task = asyncio.create_task(run_until_stopped(_PaperBot(h)))
        await wait_until(lambda: armed(h.entry))
        rs = h.rs
        rs.current_support, rs.current_resistance = 99.0, 101.0
        rs.short_trigger, rs.long_trigger = 99.0, 101.0
        rs.last_sr_update_time = now_ms() + 1
        h.paper.push_price(101.5)
        await wait_until(lambda: armed(h.resolve))
        h.paper.push_price(103.0)
        await asyncio.wait_for(task, 3)

    with pytest.raises(ExchangeError):
        asyncio.run(scenario())
    assert h.notifier.texts()[-1] == "🛑 BOT STOPPED: ExchangeError: Illegal category"
