from __future__ import annotations

"""Runtime configuration for the gateway.

All tunables are read from the environment (optionally seeded from a .env file
by the API entrypoint). Backoff constants are policy, not protocol: every one
of them can be overridden.

Env vars:
- CHATLINK_MODE: "single" (one shared bot identity) or "multi" (one connection per account)
- CHATLINK_BOT_KEY: identity key of the shared bot in single mode
- CHATLINK_RECONNECT_MAX_ATTEMPTS, CHATLINK_TRANSPORT_BACKOFF_MIN_S/_MAX_S,
  CHATLINK_AUTH_BACKOFF_MIN_S/_MAX_S: steady-state recovery policy
- CHATLINK_LAUNCH_ATTEMPTS, CHATLINK_LAUNCH_STEP_S: initial launch retry policy
- CHATLINK_CONNECT_TIMEOUT_S, CHATLINK_RECONNECT_TIMEOUT_S: bounded waits for status
- CHATLINK_ACTIVATION_KEYWORD, CHATLINK_CODE_TTL_S: pairing
- CHATLINK_REMINDER_CRON, CHATLINK_TIMEZONE, CHATLINK_REMINDER_FANOUT: reminder sweep
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


SINGLE_TENANT = "single"
MULTI_TENANT = "multi"

TRANSPORT_TRACK = "transport"
AUTH_TRACK = "auth"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 5
    transport_min_s: float = 30.0
    transport_max_s: float = 300.0
    auth_min_s: float = 60.0
    auth_max_s: float = 600.0

    @staticmethod
    def from_env() -> "BackoffPolicy":
        return BackoffPolicy(
            max_attempts=_env_int("CHATLINK_RECONNECT_MAX_ATTEMPTS", 5),
            transport_min_s=_env_float("CHATLINK_TRANSPORT_BACKOFF_MIN_S", 30.0),
            transport_max_s=_env_float("CHATLINK_TRANSPORT_BACKOFF_MAX_S", 300.0),
            auth_min_s=_env_float("CHATLINK_AUTH_BACKOFF_MIN_S", 60.0),
            auth_max_s=_env_float("CHATLINK_AUTH_BACKOFF_MAX_S", 600.0),
        )

    def window(self, track: str) -> Tuple[float, float]:
        """Return (floor, ceiling) seconds for a recovery track."""
        if track == AUTH_TRACK:
            return self.auth_min_s, self.auth_max_s
        return self.transport_min_s, self.transport_max_s

    def delay_for(self, track: str, attempt: int) -> float:
        floor, ceiling = self.window(track)
        return min(floor * (2 ** max(attempt - 1, 0)), ceiling)


@dataclass(frozen=True)
class LaunchPolicy:
    attempts: int = 3
    step_s: float = 10.0

    @staticmethod
    def from_env() -> "LaunchPolicy":
        return LaunchPolicy(
            attempts=max(1, _env_int("CHATLINK_LAUNCH_ATTEMPTS", 3)),
            step_s=_env_float("CHATLINK_LAUNCH_STEP_S", 10.0),
        )


@dataclass(frozen=True)
class GatewaySettings:
    mode: str = SINGLE_TENANT
    bot_key: str = "shared-bot"
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    launch: LaunchPolicy = field(default_factory=LaunchPolicy)
    connect_timeout_s: float = 30.0
    reconnect_timeout_s: float = 60.0
    activation_keyword: str = "AKTIVASI"
    code_ttl_s: int = 300
    reminder_cron: str = "0 20 * * *"
    timezone: str = "Asia/Jakarta"
    reminder_fanout: int = 5
    default_locale: str = "en"
    autostart: bool = True
    relay_url: Optional[str] = None
    relay_token: Optional[str] = None
    webhook_url: Optional[str] = None

    @staticmethod
    def from_env() -> "GatewaySettings":
        mode = (os.getenv("CHATLINK_MODE") or SINGLE_TENANT).strip().lower()
        if mode not in (SINGLE_TENANT, MULTI_TENANT):
            mode = SINGLE_TENANT
        return GatewaySettings(
            mode=mode,
            bot_key=os.getenv("CHATLINK_BOT_KEY", "shared-bot"),
            backoff=BackoffPolicy.from_env(),
            launch=LaunchPolicy.from_env(),
            connect_timeout_s=_env_float("CHATLINK_CONNECT_TIMEOUT_S", 30.0),
            reconnect_timeout_s=_env_float("CHATLINK_RECONNECT_TIMEOUT_S", 60.0),
            activation_keyword=(os.getenv("CHATLINK_ACTIVATION_KEYWORD") or "AKTIVASI").strip(),
            code_ttl_s=_env_int("CHATLINK_CODE_TTL_S", 300),
            reminder_cron=os.getenv("CHATLINK_REMINDER_CRON", "0 20 * * *"),
            timezone=os.getenv("CHATLINK_TIMEZONE") or os.getenv("TZ") or "Asia/Jakarta",
            reminder_fanout=max(1, _env_int("CHATLINK_REMINDER_FANOUT", 5)),
            default_locale=(os.getenv("CHATLINK_DEFAULT_LOCALE") or "en").lower(),
            autostart=_env_flag("CHATLINK_AUTOSTART", True),
            relay_url=os.getenv("CHATLINK_RELAY_URL") or None,
            relay_token=os.getenv("CHATLINK_RELAY_TOKEN") or None,
            webhook_url=os.getenv("CHATLINK_WEBHOOK_URL") or None,
        )

    @property
    def single_tenant(self) -> bool:
        return self.mode == SINGLE_TENANT
