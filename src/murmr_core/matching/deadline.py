"""Deadline matching over clock ticks."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from murmr_core.models import TimeCondition


def match(now: datetime, conditions: Iterable[TimeCondition]) -> list[str]:
    """Return ids of conditions whose deadline is at or before ``now``.

    Fired conditions are expected to be absent from ``conditions``; a passed
    deadline keeps matching on every tick until that happens.
    """
    return [condition.condition_id for condition in conditions if now >= condition.deadline]


def overdue_by(now: datetime, condition: TimeCondition) -> timedelta:
    return now - condition.deadline


def next_deadline(now: datetime, conditions: Iterable[TimeCondition]) -> datetime | None:
    upcoming = [condition.deadline for condition in conditions if condition.deadline > now]
    return min(upcoming) if upcoming else None
