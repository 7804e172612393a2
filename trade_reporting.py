#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import io
import sqlite3
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from bot_log import log_error
from exchange_ports import Candle, Position


def dilute_points(points: Sequence[Tuple[int, float]], every: int) -> List[Tuple[int, float]]:
    """Keep first, last and every n-th point."""
    pts = list(points)
    every = max(1, int(every))
    if len(pts) <= 2 or every == 1:
        return pts
    return [p for i, p in enumerate(pts) if i == 0 or i == len(pts) - 1 or i % every == 0]


def _png(fig) -> bytes:
    buf = io.BytesIO()
    fig.tight_layout()
    fig.savefig(buf, format="png", dpi=140)
    plt.close(fig)
    return buf.getvalue()


def render_pnl_chart(points: Sequence[Tuple[int, float]], title: str = "PnL progression") -> bytes:
    ts = [datetime.fromtimestamp(t / 1000, tz=timezone.utc) for t, _ in points]
    pnl = [v for _, v in points]
    fig, ax = plt.subplots(figsize=(8, 3.6))
    ax.plot(ts, pnl, linewidth=1.6)
    ax.axhline(0.0, color="grey", linewidth=0.8, linestyle="--")
    ax.set_title(title)
    ax.set_xlabel("time (UTC)")
    ax.set_ylabel("USDT")
    fig.autofmt_xdate()
    return _png(fig)


def render_signal_chart(
    symbol: str,
    candles: Sequence[Candle],
    support: Optional[float],
    resistance: Optional[float],
    long_trigger: Optional[float] = None,
    short_trigger: Optional[float] = None,
    position: Optional[Position] = None,
) -> bytes:
    xs = list(range(len(candles)))
    fig, ax = plt.subplots(figsize=(9, 4.2))
    for x, c in zip(xs, candles):
        color = "tab:green" if c.c >= c.o else "tab:red"
        ax.vlines(x, c.l, c.h, color=color, linewidth=0.8)
        ax.vlines(x, min(c.o, c.c), max(c.o, c.c), color=color, linewidth=3.0)
    if resistance is not None:
        ax.axhline(resistance, color="tab:red", linewidth=1.0, label=f"resistance {resistance:g}")
    if support is not None:
        ax.axhline(support, color="tab:green", linewidth=1.0, label=f"support {support:g}")
    if long_trigger is not None:
        ax.axhline(long_trigger, color="tab:red", linewidth=0.8, linestyle=":", label=f"long trigger {long_trigger:g}")
    if short_trigger is not None:
        ax.axhline(short_trigger, color="tab:green", linewidth=0.8, linestyle=":", label=f"short trigger {short_trigger:g}")
    if position is not None:
        ax.axhline(position.avg_price, color="tab:blue", linewidth=1.0, linestyle="--", label=f"{position.side} @ {position.avg_price:g}")
    ax.set_title(f"{symbol} 1m")
    if ax.get_legend_handles_labels()[0]:
        ax.legend(loc="upper left", fontsize=7)
    return _png(fig)


class TradeJournal:
    """
    Append-only sqlite log of trade events. Best effort: a failing insert is
    logged to errors.log and never breaks trading.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def init(self) -> None:
        try:
            with sqlite3.connect(self.db_path) as con:
                con.execute(
                    """
                    CREATE TABLE IF NOT EXISTS trade_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        ts INTEGER,
                        event TEXT,
                        symbol TEXT,
                        side TEXT,
                        strategy TEXT,
                        position_id INTEGER,
                        qty REAL,
                        entry_price REAL,
                        exit_price REAL,
                        pnl REAL,
                        fees REAL,
                        reason TEXT
                    )
                    """
                )
                con.commit()
        except Exception as e:
            log_error(f"db init fail: {e}")

    def log_event(
        self,
        event: str,
        pos: Position,
        strategy: str,
        *,
        exit_px: Optional[float] = None,
        pnl: Optional[float] = None,
        fees: Optional[float] = None,
        reason: str = "",
    ) -> None:
        try:
            with sqlite3.connect(self.db_path) as con:
                con.execute(
                    """
                    INSERT INTO trade_events
                    (ts, event, symbol, side, strategy, position_id, qty, entry_price, exit_price, pnl, fees, reason)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        int(time.time()),
                        str(event),
                        pos.symbol,
                        pos.side,
                        strategy,
                        int(pos.id),
                        float(pos.size),
                        float(pos.avg_price),
                        float(exit_px) if exit_px is not None else None,
                        float(pnl) if pnl is not None else None,
                        float(fees) if fees is not None else None,
                        reason,
                    ),
                )
                con.commit()
        except Exception as e:
            log_error(f"db log fail: {e}")

    def fetch_closes(self, since_ts: int = 0) -> List[Tuple[int, float]]:
        try:
            with sqlite3.connect(self.db_path) as con:
                cur = con.execute(
                    "SELECT ts, pnl FROM trade_events WHERE event IN ('CLOSE', 'LIQUIDATED') AND pnl IS NOT NULL AND ts>=? ORDER BY ts ASC",
                    (int(since_ts),),
                )
                return [(int(ts), float(pnl)) for ts, pnl in cur.fetchall()]
        except Exception as e:
            log_error(f"db read fail: {e}")
            return []
