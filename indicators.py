from __future__ import annotations

from typing import List, Iterable, Optional, Sequence

import numpy as np


def true_ranges(h: Sequence[float], l: Sequence[float], c: Sequence[float]) -> np.ndarray:
    """
    True Range по каждому бару.
    Первый бар: high - low (нет предыдущего close).
    """
    hh = np.asarray(h, dtype=float)
    ll = np.asarray(l, dtype=float)
    cc = np.asarray(c, dtype=float)
    if hh.size == 0:
        return np.zeros(0)
    tr = hh - ll
    if hh.size > 1:
        pc = cc[:-1]
        tr[1:] = np.maximum.reduce([hh[1:] - ll[1:], np.abs(hh[1:] - pc), np.abs(ll[1:] - pc)])
    return tr


def atr_simple(tr: Sequence[float], period: int) -> Optional[float]:
    """
    ATR как простое среднее последних `period` значений TR (без сглаживания Уайлдера).
    Если значений меньше period -> None.
    """
    arr = np.asarray(tr, dtype=float)
    if period <= 0 or arr.size < period:
        return None
    return float(np.mean(arr[-period:]))


def ema_series(series: Iterable[float], length: int) -> List[float]:
    """
    EMA по всей серии, стартует с первого значения.
    Пустой список -> пустой результат.
    """
    vals = [float(x) for x in series]
    if not vals or length <= 0:
        return []
    alpha = 2.0 / (length + 1.0)
    out = [vals[0]]
    for x in vals[1:]:
        out.append(alpha * x + (1.0 - alpha) * out[-1])
    return out


def upper_median(values: Iterable[float]) -> float:
    """
    sorted(values)[len // 2]: для чётной длины берём верхний из двух средних,
    без усреднения. Пусто -> 0.0.
    """
    vals = sorted(float(x) for x in values)
    if not vals:
        return 0.0
    return vals[len(vals) // 2]
