from __future__ import annotations

from datetime import date, datetime


def interval_elapsed(last_run_at: float | None, now: float, interval_seconds: float) -> bool:
    if last_run_at is None:
        return True
    return now - last_run_at >= interval_seconds


def daily_run_due(now: datetime, *, run_hour_utc: int, last_run_on: date | None) -> bool:
    """True once per UTC day, at or after ``run_hour_utc``."""
    if now.hour < run_hour_utc:
        return False
    return last_run_on != now.date()


def next_backoff(current: float, *, base: float, ceiling: float, jitter: float = 0.0) -> float:
    return min(max(current, base) * (2.0 + jitter), ceiling)
