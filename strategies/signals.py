#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from bot_utils import round_price

SIGNAL_UP = "Up"
SIGNAL_DOWN = "Down"
SIGNAL_KANGAROO = "Kangaroo"
TRENDS = (SIGNAL_UP, SIGNAL_DOWN, SIGNAL_KANGAROO)


@dataclass(frozen=True)
class SignalParams:
    N: int = 2
    atr_len: int = 14
    K: int = 5
    eps: float = 0.0005
    m_atr: float = 0.25
    roc_min: float = 0.001
    ema_period: int = 10
    need_two_closes: bool = False
    vol_mult: float = 1.3

    @property
    def min_required(self) -> int:
        return max(self.N + 1, self.atr_len, self.K, self.ema_period)


@dataclass(frozen=True)
class SignalSnapshot:
    signal: str  # "Up" | "Down" | "Kangaroo"
    support: Optional[float]
    resistance: Optional[float]
    atr: Optional[float]
    roc: Optional[float]
    slope: Optional[float]
    evaluated_at: int = 0  # ms
    close: Optional[float] = None

    # individual breakout conditions, useful for debugging and reports
    up_lvl: bool = False
    up_size: bool = False
    up_momo: bool = False
    dn_lvl: bool = False
    dn_size: bool = False
    dn_momo: bool = False


@dataclass(frozen=True)
class TriggerLevels:
    long_trigger: Optional[float]
    short_trigger: Optional[float]


def derive_trigger_levels(snap: SignalSnapshot, buffer_pct: float, price_precision: Optional[int]) -> TriggerLevels:
    """
    Long trigger sits below resistance, short trigger above support.
    Long is rounded down, short is rounded up, at the instrument price precision.
    """
    b = float(buffer_pct) / 100.0
    long_t = None
    short_t = None
    if snap.resistance is not None:
        long_t = round_price(snap.resistance * (1.0 - b), price_precision, up=False)
    if snap.support is not None:
        short_t = round_price(snap.support * (1.0 + b), price_precision, up=True)
    return TriggerLevels(long_trigger=long_t, short_trigger=short_t)
