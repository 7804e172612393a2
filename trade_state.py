# trade_state.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from exchange_ports import Position, SymbolInfo
from strategies.signals import SIGNAL_KANGAROO, TRENDS

PNL_HISTORY_MAX = 500


class BotStatus:
    STARTING = "STARTING"
    WAIT_FOR_ENTRY = "WAIT_FOR_ENTRY"
    WAIT_FOR_RESOLVE = "WAIT_FOR_RESOLVE"


@dataclass
class TradeMetrics:
    """Снимок последней закрытой сделки, перезаписывается при каждом закрытии."""

    closed_position_id: Optional[int] = None
    gross_pnl: Optional[float] = None
    balance_delta: Optional[float] = None
    fee_estimate: Optional[float] = None
    net_pnl: Optional[float] = None


@dataclass
class PriceMark:
    price: float
    ts: int  # ms


@dataclass
class ComboRecord:
    entries: int = 0
    pnl: float = 0.0
    liquidated_count: int = 0


def _empty_combo_records() -> Dict[str, Dict[str, ComboRecord]]:
    return {big: {small: ComboRecord() for small in TRENDS} for big in TRENDS}


@dataclass
class BotRunState:
    """
    Всё состояние одного инстанса бота. Живёт только в памяти процесса:
    после рестарта история теряется (кроме trade_events в sqlite).

    Меняется только из event loop'а, поэтому без локов; но callbacks
    обязаны перепроверять curr_position перед действием.
    """

    symbol: str
    leverage: int
    bet_size: float

    run_start_ts: int = 0
    status: str = BotStatus.STARTING

    start_quote_balance: Optional[float] = None
    curr_quote_balance: Optional[float] = None
    total_calculated_profit: float = 0.0

    liquidation_sleep_finish_ts: Optional[int] = None
    is_sleeping: bool = False

    symbol_info: Optional[SymbolInfo] = None

    curr_position: Optional[Position] = None
    entry_mark: Optional[PriceMark] = None
    resolve_mark: Optional[PriceMark] = None

    slippage_accumulation: float = 0.0
    number_of_trades: int = 0
    pnl_history: Deque[Tuple[int, float]] = field(default_factory=lambda: deque(maxlen=PNL_HISTORY_MAX))
    last_trade: TradeMetrics = field(default_factory=TradeMetrics)

    # breakout levels
    current_signal: str = SIGNAL_KANGAROO
    current_support: Optional[float] = None
    current_resistance: Optional[float] = None
    long_trigger: Optional[float] = None
    short_trigger: Optional[float] = None
    last_sr_update_time: int = 0
    last_entry_time: int = 0
    last_exit_time: int = 0

    # trend bots
    current_trend: str = SIGNAL_KANGAROO
    big_trend: str = SIGNAL_KANGAROO
    small_trend: str = SIGNAL_KANGAROO
    last_trend_update_time: int = 0
    resolve_values: List[str] = field(default_factory=list)
    committed_combo: Optional[Tuple[str, str]] = None
    next_force_side: Optional[str] = None
    combo_records: Dict[str, Dict[str, ComboRecord]] = field(default_factory=_empty_combo_records)

    # trailing stop
    trailing_window: Deque[Tuple[float, float, float]] = field(default_factory=deque)  # (h, l, c)
    trailing_level: Optional[float] = None
    trailing_breach_count: int = 0

    connected_clients: int = 0

    @property
    def price_precision(self) -> Optional[int]:
        return self.symbol_info.price_precision if self.symbol_info else None

    def signal_fresh_for_entry(self) -> bool:
        # ни одного выхода ещё не было -> любой сигнал свежий
        return self.last_exit_time == 0 or self.last_sr_update_time > self.last_exit_time

    def signal_fresh_for_exit(self) -> bool:
        return self.last_sr_update_time > self.last_entry_time

    def trend_fresh_for_entry(self) -> bool:
        return self.last_exit_time == 0 or self.last_trend_update_time > self.last_exit_time

    def trend_fresh_for_exit(self) -> bool:
        return self.last_trend_update_time > self.last_entry_time

    def record_pnl_point(self, ts: int) -> None:
        self.pnl_history.append((ts, self.total_calculated_profit))

    def reset_trailing(self) -> None:
        self.trailing_window.clear()
        self.trailing_level = None
        self.trailing_breach_count = 0
