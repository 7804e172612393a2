#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import os
import time
from typing import Optional


def log(tag: str, msg: str) -> None:
    print(f"[{tag}] {msg}", flush=True)


def log_error(msg: str, path: Optional[str] = None) -> None:
    # пишем в errors.log, сам логгер никогда не падает
    try:
        with open(path or os.getenv("ERRORS_LOG", "errors.log"), "a") as f:
            f.write(f"[{time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime())}] {msg}\n")
    except Exception:
        pass
