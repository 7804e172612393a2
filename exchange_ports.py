#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Exchange boundaries used by the bot core.

The lifecycle states only talk to these Protocols, never to a concrete
client. `bybit_client.BybitExchange` and `paper_exchange.PaperExchange`
implement both ports.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Protocol, Sequence, TypeVar, Union

from retry import is_transient_error

T = TypeVar("T")

Unhook = Callable[[], None]

LONG = "long"
SHORT = "short"

# order statuses after adapter normalisation
ORDER_FILLED = "filled"
ORDER_FAILURE_STATUSES = {"canceled", "partially_filled_canceled", "rejected", "unknown"}


class ExchangeError(RuntimeError):
    def __init__(self, msg: str, ret_code: Optional[str] = None):
        super().__init__(msg)
        self.ret_code = ret_code


class OrderRejectedError(RuntimeError):
    pass


class FillNotConfirmedError(RuntimeError):
    pass


@dataclass(frozen=True)
class Candle:
    ts: int  # open time, ms
    o: float
    h: float
    l: float
    c: float
    v: Optional[float] = None


@dataclass
class Position:
    id: int
    symbol: str
    side: str  # "long" | "short"
    size: float
    avg_price: float
    leverage: float = 1.0
    liquidation_price: Optional[float] = None
    notional: float = 0.0
    create_time: int = 0
    update_time: int = 0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    close_price: Optional[float] = None
    # set by adapters that report liquidations explicitly
    is_liquidated: Optional[bool] = None


@dataclass(frozen=True)
class BalanceInfo:
    coin: str
    free: float
    frozen: float = 0.0


@dataclass(frozen=True)
class SymbolInfo:
    price_precision: Optional[int] = None
    base_precision: Optional[int] = None
    quote_precision: Optional[int] = None
    min_notional: Optional[float] = None
    max_mkt_order_qty: Optional[float] = None


@dataclass(frozen=True)
class OrderRequest:
    symbol: str
    side: str  # "buy" | "sell"
    qty: float  # base coin
    client_order_id: str
    order_type: str = "market"
    reduce_only: bool = False


@dataclass(frozen=True)
class OrderUpdate:
    order_id: str
    client_order_id: str
    status: str
    execution_price: Optional[float] = None
    update_time: int = 0


@dataclass(frozen=True)
class FillUpdate:
    client_order_id: str
    execution_price: Optional[float]
    update_time: int


class MarketDataPort(Protocol):
    async def get_candles(self, symbol: str, start_ms: int, end_ms: int, resolution: str = "1") -> List[Candle]:
        ...

    async def get_mark_price(self, symbol: str) -> float:
        ...

    def hook_price_listener(self, symbol: str, cb: Callable[[float], None]) -> Unhook:
        ...

    def hook_price_listener_with_timestamp(self, symbol: str, cb: Callable[[float, int], None]) -> Unhook:
        ...


class TradingPort(Protocol):
    async def place_order(self, req: OrderRequest) -> str:
        """Submit an order, return the exchange order id."""
        ...

    async def get_position(self, symbol: str) -> Optional[Position]:
        ...

    async def get_positions_history(self, symbol: str, position_id: Optional[int] = None) -> List[Position]:
        ...

    async def set_leverage(self, symbol: str, leverage: int) -> bool:
        ...

    async def get_balances(self) -> List[BalanceInfo]:
        ...

    async def get_symbol_info(self, symbol: str) -> SymbolInfo:
        ...

    def hook_order_listener(self, cb: Callable[[OrderUpdate], None]) -> Unhook:
        ...


class NotificationPort(Protocol):
    def queue_message(self, message: Union[str, bytes]) -> None:
        """Fire-and-forget, FIFO. bytes are sent as a PNG image."""
        ...


class TrendClassifier(Protocol):
    async def classify(self, candles: Sequence[Candle]) -> str:
        """Return "Up", "Down" or "Kangaroo"."""
        ...


# --- structured lookup results -------------------------------------------

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    what: str = ""


@dataclass(frozen=True)
class TransientError:
    error: BaseException


LookupResult = Union[Ok[T], NotFound, TransientError]


async def lookup_position(trading: TradingPort, symbol: str) -> LookupResult[Position]:
    try:
        pos = await trading.get_position(symbol)
    except Exception as e:
        if is_transient_error(e):
            return TransientError(e)
        raise
    if pos is None or pos.size == 0:
        return NotFound(symbol)
    return Ok(pos)


async def lookup_closed_position(trading: TradingPort, symbol: str, position_id: int) -> LookupResult[Position]:
    try:
        history = await trading.get_positions_history(symbol, position_id=position_id)
    except Exception as e:
        if is_transient_error(e):
            return TransientError(e)
        raise
    for p in history:
        if p.id == position_id:
            return Ok(p)
    return NotFound(f"closed position {position_id}")


def free_balance(balances: Sequence[BalanceInfo], coin: str = "USDT") -> float:
    for b in balances:
        if b.coin == coin:
            return float(b.free)
    return 0.0
