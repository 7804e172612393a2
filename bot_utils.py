#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import random
import re
import string
import time
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Optional

from exchange_ports import LONG, Position, SHORT

DURATION_RE = re.compile(r"^(?:\d+h(?:\d+m)?|\d+m)$")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_duration_ms(s: str) -> int:
    """"12h", "10h30m", "24m" -> milliseconds."""
    txt = (s or "").strip()
    if not DURATION_RE.match(txt):
        raise ValueError(f'Invalid duration "{s}". Must be like "12h", "10h30m" or "24m".')
    hours = re.search(r"(\d+)h", txt)
    minutes = re.search(r"(\d+)m", txt)
    h = int(hours.group(1)) if hours else 0
    m = int(minutes.group(1)) if minutes else 0
    return (h * 3600 + m * 60) * 1000


def round_price(value: float, precision: Optional[int], up: bool = False) -> float:
    """
    Round to `precision` decimals in the requested direction.
    precision=None leaves the value as is.
    """
    if precision is None:
        return float(value)
    step = Decimal(1).scaleb(-int(precision))
    d = (Decimal(str(value)) / step).to_integral_value(rounding=ROUND_UP if up else ROUND_DOWN) * step
    return float(d)


def round_down(value: float, decimals: int) -> float:
    return round_price(value, decimals, up=False)


def opposite_side(side: str) -> str:
    return SHORT if side == LONG else LONG


def unrealized_pnl(pos: Position, mark_price: float) -> float:
    if pos.side == LONG:
        return (mark_price - pos.avg_price) * pos.size
    return (pos.avg_price - mark_price) * pos.size


def client_order_id(prefix: str, action: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=10))
    return f"{prefix or ''}bb-{action}-{suffix}"


def run_duration(start_ms: int, end_ms: Optional[int] = None) -> tuple[float, str]:
    """Returns (days as float, "1D 2H3m4s")."""
    ms = max(0, (end_ms if end_ms is not None else now_ms()) - start_ms)
    days_f = ms / 86_400_000
    secs = ms // 1000
    d, rem = divmod(secs, 86_400)
    h, rem = divmod(rem, 3600)
    m, s = divmod(rem, 60)
    return days_f, f"{d}D {h}H{m}m{s}s"


def icon(good: bool) -> str:
    return "🟩" if good else "🟥"


def _num(v: Optional[float], decimals: int = 4) -> str:
    if v is None:
        return "N/A"
    return f"{v:.{decimals}f}"


def fee_aware_pnl_line(gross: Optional[float], fee: Optional[float], net: Optional[float], decimals: int = 4) -> str:
    return (
        f"Realized PnL: {icon(bool(net and net > 0))} ${_num(net, decimals)} | "
        f"Fees (est.): -${_num(fee, decimals)} | "
        f"Gross (without fees): {icon(bool(gross and gross > 0))} ${_num(gross, decimals)}"
    )


def position_detail_msg(pos: Position) -> str:
    return (
        f"ID: {pos.id}\n"
        f"Side: {pos.side}\n"
        f"Leverage: X{pos.leverage}\n"
        f"Size: {pos.size}\n"
        f"Notional Value: {pos.notional}\n\n"
        f"Liquidation Price: {pos.liquidation_price}\n"
        f"Avg Price: {pos.avg_price}\n\n"
        f"Realized PnL: {pos.realized_pnl}\n"
        f"Unrealized PnL: {icon(pos.unrealized_pnl > 0)} {pos.unrealized_pnl}"
    )
