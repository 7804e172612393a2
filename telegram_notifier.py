#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""Telegram delivery: FIFO queue + command long-poll.

Messages are queued synchronously from anywhere in the bot and delivered by
`run()` one by one, 1s apart. On HTTP 429 the worker sleeps `retry_after`
seconds and re-sends the same item, so ordering is preserved.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, Optional, Union

import requests

from bot_log import log, log_error

TG_API = "https://api.telegram.org"

CommandHandler = Callable[[str], Awaitable[None]]


class TelegramNotifier:
    def __init__(
        self,
        token: Optional[str],
        chat_id: Optional[str],
        *,
        spacing_sec: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.token = token or ""
        self.chat_id = str(chat_id or "")
        self.spacing_sec = spacing_sec
        self.session = session or requests.Session()
        self._items: Deque[Union[str, bytes]] = deque()

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    def queue_message(self, message: Union[str, bytes]) -> None:
        if isinstance(message, str):
            log("tg", message.strip())
        if not self.enabled:
            return
        self._items.append(message)

    @property
    def pending(self) -> int:
        return len(self._items)

    # --- HTTP ---
    def _post(self, item: Union[str, bytes]) -> requests.Response:
        if isinstance(item, bytes):
            return self.session.post(
                f"{TG_API}/bot{self.token}/sendPhoto",
                data={"chat_id": self.chat_id},
                files={"photo": ("chart.png", item, "image/png")},
                timeout=20,
            )
        return self.session.post(
            f"{TG_API}/bot{self.token}/sendMessage",
            json={"chat_id": self.chat_id, "text": item},
            timeout=10,
        )

    def _send(self, item: Union[str, bytes]) -> Optional[float]:
        """Returns seconds to wait when Telegram throttles us, else None."""
        r = self._post(item)
        if r.status_code == 429:
            try:
                retry_after = float(((r.json() or {}).get("parameters") or {}).get("retry_after") or 5)
            except ValueError:
                retry_after = 5.0
            return retry_after
        if r.status_code >= 400:
            log_error(f"tg send failed: HTTP {r.status_code} {r.text[:300]}")
        return None

    async def run(self) -> None:
        while True:
            if not self._items:
                await asyncio.sleep(0.2)
                continue
            item = self._items[0]
            try:
                retry_after = await asyncio.to_thread(self._send, item)
            except requests.RequestException as e:
                # network problem: keep the item, try again shortly
                log_error(f"tg send error: {e}")
                await asyncio.sleep(max(1.0, self.spacing_sec))
                continue
            if retry_after is not None:
                log("tg", f"rate limited, sleeping {retry_after}s")
                await asyncio.sleep(retry_after)
                continue
            self._items.popleft()
            await asyncio.sleep(self.spacing_sec)

    async def flush(self, timeout_sec: float = 15.0) -> None:
        """Wait (bounded) until the queue drains; used right before a fatal exit."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec
        while self._items and loop.time() < deadline:
            await asyncio.sleep(0.2)


class TelegramCommandLoop:
    """getUpdates long-poll, dispatching `/name args` to registered handlers."""

    def __init__(self, notifier: TelegramNotifier, poll_timeout_sec: int = 20):
        self.notifier = notifier
        self.poll_timeout_sec = poll_timeout_sec
        self.handlers: Dict[str, CommandHandler] = {}
        self._last_update_id = 0

    def register(self, name: str, handler: CommandHandler) -> None:
        self.handlers[name.lstrip("/").lower()] = handler

    async def dispatch(self, text: str) -> None:
        parts = text.strip().split()
        if not parts or not parts[0].startswith("/"):
            return
        # "/cmd@botname" -> "cmd"
        name = parts[0][1:].split("@", 1)[0].lower()
        handler = self.handlers.get(name)
        if handler is None:
            self.notifier.queue_message("Unknown command. /help")
            return
        try:
            await handler(text.strip())
        except Exception as e:
            log_error(f"tg command /{name} failed: {e!r}")
            self.notifier.queue_message(f"❌ /{name} failed: {e}")

    def _get_updates(self) -> list:
        params = {"timeout": self.poll_timeout_sec}
        if self._last_update_id:
            params["offset"] = self._last_update_id + 1
        r = self.notifier.session.get(
            f"{TG_API}/bot{self.notifier.token}/getUpdates",
            params=params,
            timeout=self.poll_timeout_sec + 5,
        )
        j = r.json()
        return j.get("result", []) if isinstance(j, dict) else []

    async def run(self) -> None:
        if not self.notifier.enabled:
            return
        while True:
            try:
                updates = await asyncio.to_thread(self._get_updates)
                for u in updates:
                    uid = int(u.get("update_id") or 0)
                    if uid > self._last_update_id:
                        self._last_update_id = uid
                    msg = u.get("message") or u.get("edited_message") or {}
                    chat_id = str((msg.get("chat") or {}).get("id") or "")
                    text = (msg.get("text") or "").strip()
                    if chat_id != self.notifier.chat_id:
                        if text.startswith("/chat_id"):
                            log("tg", f"/chat_id from foreign chat {chat_id}")
                        continue
                    if text.startswith("/"):
                        await self.dispatch(text)
            except Exception as e:
                log_error(f"tg cmd loop error: {e}")
            await asyncio.sleep(1)
