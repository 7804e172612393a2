#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

from bot_utils import DURATION_RE
from strategies.signals import SignalParams, TRENDS

VARIANTS = ("breakout", "budgeting", "combo")
ENTRY_MODES = ("follow", "against")
EXECUTIONS = ("api", "signaling")
BET_RULE_VALUES = ("long", "short", "skip")


class ConfigError(ValueError):
    pass


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v.strip())
    except ValueError:
        raise ConfigError(f"{name}={v!r} is not an integer")


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v.strip())
    except ValueError:
        raise ConfigError(f"{name}={v!r} is not a number")


def _required(env: Mapping[str, str], name: str) -> str:
    v = env.get(name)
    if v is None or not v.strip():
        raise ConfigError(f"{name} is required")
    return v.strip()


def parse_bet_rules(raw: str) -> Dict[str, Dict[str, str]]:
    """JSON like {"Up": {"Up": "long", "Down": "skip", ...}, ...}, all 9 cells required."""
    try:
        parsed = json.loads(raw)
    except ValueError as e:
        raise ConfigError(f"COMBO_BET_RULES is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise ConfigError("COMBO_BET_RULES must be a JSON object")
    rules: Dict[str, Dict[str, str]] = {}
    for big in TRENDS:
        row = parsed.get(big)
        if not isinstance(row, dict):
            raise ConfigError(f"COMBO_BET_RULES missing row {big}")
        rules[big] = {}
        for small in TRENDS:
            val = row.get(small)
            if val not in BET_RULE_VALUES:
                raise ConfigError(f"COMBO_BET_RULES[{big}][{small}]={val!r}, expected one of {BET_RULE_VALUES}")
            rules[big][small] = val
    return rules


@dataclass
class BotConfig:
    symbol: str
    leverage: int
    bet_size: float
    check_interval_minutes: int
    sleep_after_liquidation: str

    variant: str = "breakout"
    buffer_pct: float = 0.0
    take_profit_pct: float = 0.0
    entry_mode: str = "follow"
    check_offset_ms: int = 10
    order_timeout_ms: int = 60_000
    client_order_prefix: str = ""
    execution: str = "api"
    signaling_port: int = 0
    sr_distance_factor: float = 0.5
    quote_coin: str = "USDT"

    signal: SignalParams = field(default_factory=SignalParams)

    trail_atr_length: int = 14
    trail_lookback: int = 60
    trail_multiplier: float = 0.0
    trail_confirm_ticks: int = 1

    # budgeting / combo
    trend_window_minutes: int = 120
    big_interval_minutes: int = 60
    small_interval_minutes: int = 15
    big_window_minutes: int = 240
    small_window_minutes: int = 60
    bet_rules: Optional[Dict[str, Dict[str, str]]] = None

    # confirmation loops
    confirm_attempts: int = 10
    confirm_interval_sec: float = 5.0

    dry_run: bool = True
    dry_run_balance: float = 1000.0
    bybit_key: str = ""
    bybit_secret: str = ""
    bybit_base: str = "https://api.bybit.com"
    tg_token: str = ""
    tg_chat: str = ""
    tg_commands_enable: bool = True
    trade_db_path: str = "trades.db"

    @property
    def signaling_enabled(self) -> bool:
        return self.signaling_port > 0

    def validate(self) -> None:
        if self.variant not in VARIANTS:
            raise ConfigError(f"BOT_VARIANT={self.variant!r}, expected one of {VARIANTS}")
        if self.entry_mode not in ENTRY_MODES:
            raise ConfigError(f"BOT_ENTRY_MODE={self.entry_mode!r}, expected one of {ENTRY_MODES}")
        if self.execution not in EXECUTIONS:
            raise ConfigError(f"BOT_EXECUTION={self.execution!r}, expected one of {EXECUTIONS}")
        if self.execution == "signaling" and not self.signaling_enabled:
            raise ConfigError("BOT_EXECUTION=signaling needs SIGNALING_PORT")
        if self.leverage <= 0:
            raise ConfigError("BOT_LEVERAGE must be > 0")
        if self.bet_size <= 0:
            raise ConfigError("BOT_BET_SIZE must be > 0")
        if self.check_interval_minutes <= 0:
            raise ConfigError("BOT_CHECK_INTERVAL_MINUTES must be > 0")
        if not DURATION_RE.match(self.sleep_after_liquidation):
            raise ConfigError(
                f'Invalid time format: "{self.sleep_after_liquidation}". Must be like "12h", "10h30m", or "24m".'
            )
        if self.buffer_pct < 0 or self.take_profit_pct < 0:
            raise ConfigError("buffer / take profit percentages must be >= 0")
        if not 0 < self.sr_distance_factor <= 1:
            raise ConfigError("BOT_SR_DISTANCE_FACTOR must be in (0, 1]")
        if self.variant == "combo":
            if self.small_interval_minutes <= 0 or self.big_interval_minutes % self.small_interval_minutes != 0:
                raise ConfigError(
                    f"COMBO_BIG_INTERVAL_MINUTES ({self.big_interval_minutes}) must be a multiple of "
                    f"COMBO_SMALL_INTERVAL_MINUTES ({self.small_interval_minutes})"
                )
            if self.bet_rules is None:
                raise ConfigError("COMBO_BET_RULES is required for the combo bot")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BotConfig":
        if env is None:
            load_dotenv()
            env = os.environ

        signal = SignalParams(
            N=_env_int(env, "BREAKOUT_SIGNAL_N", 2),
            atr_len=_env_int(env, "BREAKOUT_SIGNAL_ATR_LEN", 14),
            K=_env_int(env, "BREAKOUT_SIGNAL_K", 5),
            eps=_env_float(env, "BREAKOUT_SIGNAL_EPS", 0.0005),
            m_atr=_env_float(env, "BREAKOUT_SIGNAL_M_ATR", 0.25),
            roc_min=_env_float(env, "BREAKOUT_SIGNAL_ROC_MIN", 0.001),
            ema_period=_env_int(env, "BREAKOUT_SIGNAL_EMA_PERIOD", 10),
            need_two_closes=_env_bool(env, "BREAKOUT_SIGNAL_NEED_TWO_CLOSES", False),
            vol_mult=_env_float(env, "BREAKOUT_SIGNAL_VOL_MULT", 1.3),
        )

        variant = _env_str(env, "BOT_VARIANT", "breakout").lower()
        raw_rules = _env_str(env, "COMBO_BET_RULES")

        raw_leverage = _required(env, "BOT_LEVERAGE")
        raw_bet = _required(env, "BOT_BET_SIZE")
        raw_interval = _required(env, "BOT_CHECK_INTERVAL_MINUTES")
        try:
            leverage = int(raw_leverage)
            bet_size = float(raw_bet)
            interval = int(raw_interval)
        except ValueError as e:
            raise ConfigError(f"malformed numeric setting: {e}")

        cfg = cls(
            symbol=_required(env, "SYMBOL").upper(),
            leverage=leverage,
            bet_size=bet_size,
            check_interval_minutes=interval,
            sleep_after_liquidation=_required(env, "BOT_SLEEP_DURATION_AFTER_LIQUIDATION"),
            variant=variant,
            buffer_pct=_env_float(env, "BOT_BUFFER_PERCENTAGE", 0.0),
            take_profit_pct=_env_float(env, "BOT_TAKE_PROFIT_PERCENTAGE", 0.0),
            entry_mode=_env_str(env, "BOT_ENTRY_MODE", "follow").lower(),
            check_offset_ms=_env_int(env, "BOT_CHECK_OFFSET_MS", 10),
            order_timeout_ms=_env_int(env, "BOT_ORDER_TIMEOUT_MS", 60_000),
            client_order_prefix=_env_str(env, "BOT_CLIENT_ORDER_PREFIX"),
            execution=_env_str(env, "BOT_EXECUTION", "api").lower(),
            signaling_port=_env_int(env, "SIGNALING_PORT", 0),
            sr_distance_factor=_env_float(env, "BOT_SR_DISTANCE_FACTOR", 0.5),
            quote_coin=_env_str(env, "BOT_QUOTE_COIN", "USDT").upper(),
            signal=signal,
            trail_atr_length=_env_int(env, "BOT_TRAIL_ATR_LENGTH", 14),
            trail_lookback=_env_int(env, "BOT_TRAIL_LOOKBACK", 60),
            trail_multiplier=_env_float(env, "BOT_TRAIL_MULTIPLIER", 0.0),
            trail_confirm_ticks=max(1, _env_int(env, "BOT_TRAIL_CONFIRM_TICKS", 1)),
            trend_window_minutes=_env_int(env, "TREND_WINDOW_MINUTES", 120),
            big_interval_minutes=_env_int(env, "COMBO_BIG_INTERVAL_MINUTES", 60),
            small_interval_minutes=_env_int(env, "COMBO_SMALL_INTERVAL_MINUTES", 15),
            big_window_minutes=_env_int(env, "COMBO_BIG_WINDOW_MINUTES", 240),
            small_window_minutes=_env_int(env, "COMBO_SMALL_WINDOW_MINUTES", 60),
            bet_rules=parse_bet_rules(raw_rules) if raw_rules else None,
            dry_run=_env_bool(env, "DRY_RUN", True),
            dry_run_balance=_env_float(env, "DRY_RUN_BALANCE", 1000.0),
            bybit_key=_env_str(env, "BYBIT_API_KEY"),
            bybit_secret=_env_str(env, "BYBIT_API_SECRET"),
            bybit_base=_env_str(env, "BYBIT_BASE", "https://api.bybit.com"),
            tg_token=_env_str(env, "TG_TOKEN"),
            tg_chat=_env_str(env, "TG_CHAT"),
            tg_commands_enable=_env_bool(env, "TG_COMMANDS_ENABLE", True),
            trade_db_path=_env_str(env, "TRADE_DB_PATH", "trades.db"),
        )
        if not cfg.dry_run and cfg.execution == "api" and not (cfg.bybit_key and cfg.bybit_secret):
            raise ConfigError("BYBIT_API_KEY / BYBIT_API_SECRET are required when DRY_RUN=0")
        cfg.validate()
        return cfg

    def describe(self) -> str:
        s = self.signal
        lines = [
            f"Symbol: {self.symbol}",
            f"Variant: {self.variant} | entry mode: {self.entry_mode} | execution: {self.execution}",
            f"Leverage: X{self.leverage}",
            f"Bet size: {self.bet_size} {self.quote_coin}",
            f"Sleep duration after liquidation: {self.sleep_after_liquidation}",
            f"Take profit: {self.take_profit_pct or 'off'}{'%' if self.take_profit_pct else ''}",
            f"Buffer: {self.buffer_pct}%",
            "",
            f"Signal check interval: {self.check_interval_minutes} minutes",
        ]
        if self.variant == "breakout":
            lines += [
                "",
                "Signal Parameters:",
                f"N: {s.N}",
                f"ATR Length: {s.atr_len}",
                f"K: {s.K}",
                f"EPS: {s.eps}",
                f"M ATR: {s.m_atr}",
                f"ROC Min: {s.roc_min}",
                f"EMA Period: {s.ema_period}",
                f"Need Two Closes: {s.need_two_closes}",
                f"Vol Mult: {s.vol_mult}",
            ]
            if self.trail_multiplier > 0:
                lines.append(
                    f"Trailing stop: ATR {self.trail_atr_length} x{self.trail_multiplier}, "
                    f"lookback {self.trail_lookback}, confirm {self.trail_confirm_ticks} tick(s)"
                )
        elif self.variant == "budgeting":
            lines.append(f"Trend window: {self.trend_window_minutes} minutes")
        else:
            lines.append(
                f"Big: every {self.big_interval_minutes}m over {self.big_window_minutes}m | "
                f"Small: every {self.small_interval_minutes}m over {self.small_window_minutes}m"
            )
            for big, row in (self.bet_rules or {}).items():
                lines.append(f"  {big}: " + ", ".join(f"{k}={v}" for k, v in row.items()))
        return "\n".join(lines)
