#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Breakout detector over a trailing window of candles.

Up:   close breaks resistance by eps, the excess is larger than m_atr * ATR,
      and momentum confirms (ROC, EMA slope or an expanding true range).
Down: mirrored against support.
Anything else is "Kangaroo" (ranging).

Pure function: no I/O, same window -> same snapshot.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from exchange_ports import Candle
from indicators import atr_simple, ema_series, true_ranges, upper_median
from strategies.signals import (
    SIGNAL_DOWN,
    SIGNAL_KANGAROO,
    SIGNAL_UP,
    SignalParams,
    SignalSnapshot,
)

VOLUME_LOOKBACK = 20
MEDIAN_TR_LOOKBACK = 10


def _empty(evaluated_at: int) -> SignalSnapshot:
    return SignalSnapshot(
        signal=SIGNAL_KANGAROO,
        support=None,
        resistance=None,
        atr=None,
        roc=None,
        slope=None,
        evaluated_at=evaluated_at,
    )


def _volume_ok(candles: Sequence[Candle], vol_mult: float) -> bool:
    # mark-price and tick-built bars carry no volume: nothing to compare
    if not candles or candles[-1].v is None:
        return True
    prior = candles[-1 - VOLUME_LOOKBACK:-1]
    vols = [float(x.v) for x in prior if x.v is not None]
    avg = float(np.mean(vols)) if vols else 0.0
    cur = float(candles[-1].v or 0.0)
    return avg == 0 or cur > vol_mult * avg


def calculate_breakout_signal(
    candles: Sequence[Candle],
    params: Optional[SignalParams] = None,
    evaluated_at: int = 0,
) -> SignalSnapshot:
    p = params or SignalParams()
    if not candles or len(candles) < p.min_required:
        return _empty(evaluated_at)

    highs = [x.h for x in candles]
    lows = [x.l for x in candles]
    closes = [x.c for x in candles]

    tr = true_ranges(highs, lows, closes)
    atr = atr_simple(tr, p.atr_len)
    if atr is None:
        return _empty(evaluated_at)

    # S/R over the N bars before the current one
    window = candles[max(0, len(candles) - p.N - 1):-1]
    resistance = max(x.h for x in window)
    support = min(x.l for x in window)

    cur_idx = len(candles) - 1
    cur_close = closes[cur_idx]
    prev_close = closes[cur_idx - 1] if cur_idx > 0 else cur_close

    roc_base = closes[max(0, cur_idx - p.K)]
    roc = (cur_close / roc_base - 1.0) if roc_base != 0 else 0.0

    ema = ema_series(closes, p.ema_period)
    slope = ema[-1] - ema[-2] if len(ema) >= 2 else 0.0

    median_tr = upper_median(tr[-(MEDIAN_TR_LOOKBACK + 1):-1])
    cur_tr = float(tr[cur_idx])
    tr_expanding = cur_tr > median_tr

    vol_ok = _volume_ok(candles, p.vol_mult)

    up_lvl = cur_close > resistance * (1.0 + p.eps)
    up_size = (cur_close - resistance) > p.m_atr * atr
    up_momo = roc > p.roc_min or slope > 0 or tr_expanding

    dn_lvl = cur_close < support * (1.0 - p.eps)
    dn_size = (support - cur_close) > p.m_atr * atr
    dn_momo = roc < -p.roc_min or slope < 0 or tr_expanding

    if p.need_two_closes and len(candles) >= 2:
        up_lvl = up_lvl and prev_close > resistance * (1.0 + p.eps)
        dn_lvl = dn_lvl and prev_close < support * (1.0 - p.eps)

    signal = SIGNAL_KANGAROO
    if up_lvl and up_size and up_momo and vol_ok:
        signal = SIGNAL_UP
    elif dn_lvl and dn_size and dn_momo and vol_ok:
        signal = SIGNAL_DOWN

    return SignalSnapshot(
        signal=signal,
        support=float(support),
        resistance=float(resistance),
        atr=float(atr),
        roc=float(roc),
        slope=float(slope),
        evaluated_at=evaluated_at,
        close=float(cur_close),
        up_lvl=up_lvl,
        up_size=up_size,
        up_momo=up_momo,
        dn_lvl=dn_lvl,
        dn_size=dn_size,
        dn_momo=dn_momo,
    )


class BreakoutTrendClassifier:
    """
    Deterministic trend classifier for the trend-driven bots: the breakout
    signal of the window, so "Up" / "Down" / "Kangaroo" have the same meaning
    everywhere.
    """

    def __init__(self, params: Optional[SignalParams] = None):
        self.params = params or SignalParams()

    async def classify(self, candles: Sequence[Candle]) -> str:
        return calculate_breakout_signal(candles, self.params).signal
