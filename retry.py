#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Bounded retries for exchange calls.

Only transient failures (network, timeouts, HTTP 429/5xx, rate-limit replies)
are retried. Anything else is raised immediately so the caller decides
whether it is fatal.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import requests

from bot_log import log, log_error

_NETWORK_CODES = {
    "ECONNRESET",
    "ECONNREFUSED",
    "EPIPE",
    "ETIMEDOUT",
    "EAI_AGAIN",
    "ENOTFOUND",
    "ENETUNREACH",
    "EHOSTUNREACH",
}

_TRANSIENT_PHRASES = (
    "timeout",
    "timed out",
    "socket hang up",
    "network error",
    "connection reset",
    "connection aborted",
    "too many requests",
    "rate limit",
    "server is busy",
    "service unavailable",
    "bad gateway",
    "recvwindow",
    "timestamp for this request is outside",
)


def _status_of(exc: BaseException) -> Optional[int]:
    resp = getattr(exc, "response", None)
    for v in (getattr(exc, "status_code", None), getattr(exc, "status", None), getattr(resp, "status_code", None)):
        try:
            if v is not None:
                return int(v)
        except (TypeError, ValueError):
            continue
    return None


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    code = str(getattr(exc, "code", "") or getattr(exc, "errno", "") or "").upper()
    if code in _NETWORK_CODES:
        return True

    status = _status_of(exc)
    if status == 429 or (status is not None and 500 <= status <= 599):
        return True

    msg = str(exc).lower()
    return any(p in msg for p in _TRANSIENT_PHRASES)


@dataclass
class RetryPolicy:
    retries: int = 5  # after the first attempt
    min_delay_sec: float = 5.0
    max_delay_sec: float = 60.0
    factor: float = 1.5
    jitter: float = 0.2

    def delay(self, attempt_idx: int) -> float:
        raw = self.min_delay_sec * (self.factor ** attempt_idx)
        capped = min(self.max_delay_sec, max(self.min_delay_sec, raw))
        if self.jitter <= 0:
            return capped
        spread = capped * self.jitter
        return max(0.0, random.uniform(capped - spread, capped + spread))


async def with_retries(
    fn: Callable[[], Awaitable[Any]],
    *,
    label: str = "",
    policy: Optional[RetryPolicy] = None,
    is_transient: Callable[[BaseException], bool] = is_transient_error,
    on_retry: Optional[Callable[[str], None]] = None,
) -> Any:
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            remaining = policy.retries - (attempt - 1)
            if remaining <= 0 or not is_transient(e):
                raise
            delay = policy.delay(attempt - 1)
            msg = f"{label or 'call'} failed: {e!r} | retry in {delay:.1f}s ({remaining} left)"
            log("retry", msg)
            log_error(msg)
            if on_retry is not None:
                on_retry(msg)
            await asyncio.sleep(delay)
