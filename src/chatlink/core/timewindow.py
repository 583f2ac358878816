from __future__ import annotations

"""Local-time windows over Unix-second timestamps."""

import logging
import math
from datetime import datetime, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger("chatlink.reminders")


def zone_for(name: Optional[str], fallback: str = "UTC") -> tzinfo:
    for candidate in (name, fallback, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown_timezone", extra={"tz": candidate})
    return ZoneInfo("UTC")


def day_window(now: float, zone: tzinfo) -> Tuple[int, int]:
    """Half-open Unix-second bounds covering local midnight through ``now``.

    Timestamps are whole seconds, so the end is the second after ``now``: a
    transaction stamped ``int(now)`` falls inside the window.
    """
    local = datetime.fromtimestamp(now, zone)
    midnight = local.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp()), math.floor(now) + 1


def month_start(now: float, zone: tzinfo) -> int:
    local = datetime.fromtimestamp(now, zone)
    first = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return int(first.timestamp())


def period_label(now: float, zone: tzinfo) -> str:
    return datetime.fromtimestamp(now, zone).strftime("%Y-%m")
