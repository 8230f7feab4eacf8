from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def total_minutes(
    days: int | None = None, hours: int | None = None, minutes: int | None = None
) -> int:
    """Collapse a days/hours/minutes triple into whole minutes."""
    return (days or 0) * 24 * 60 + (hours or 0) * 60 + (minutes or 0)


def minutes_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 60
