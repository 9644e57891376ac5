from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger


def floor_minute(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(second=0, microsecond=0)


@lru_cache(maxsize=1024)
def compile_schedule(expr: str, timezone_name: str = "UTC") -> CronTrigger:
    """Build a trigger for a five-field cron expression; raises ``ValueError``."""
    try:
        tz = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone: {timezone_name}") from exc
    if len(expr.split()) != 5:
        raise ValueError(f"expected five cron fields: {expr!r}")
    return CronTrigger.from_crontab(expr, timezone=tz)


def is_due(expr: str, timezone_name: str, tick: datetime) -> bool:
    """True when the schedule fires exactly at the minute ``tick``."""
    minute = floor_minute(tick)
    trigger = compile_schedule(expr, timezone_name)
    next_fire = trigger.get_next_fire_time(None, minute - timedelta(seconds=1))
    return next_fire is not None and next_fire == minute


def next_fire_times(expr: str, timezone_name: str, start: datetime, count: int = 5) -> list[datetime]:
    trigger = compile_schedule(expr, timezone_name)
    fires: list[datetime] = []
    previous = None
    current = floor_minute(start)
    while len(fires) < count:
        fire = trigger.get_next_fire_time(previous, current)
        if fire is None:
            break
        fires.append(fire)
        previous = fire
        current = fire + timedelta(seconds=1)
    return fires
