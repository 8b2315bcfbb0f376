from __future__ import annotations

from datetime import datetime, timedelta, timezone

from murmr_core.matching import deadline
from murmr_core.models import TimeCondition

DEADLINE = datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc)


def test_deadline_not_matched_one_second_early() -> None:
    condition = TimeCondition(note_id="n2", deadline=DEADLINE)
    assert deadline.match(DEADLINE - timedelta(seconds=1), [condition]) == []


def test_deadline_matched_exactly_at_and_after() -> None:
    condition = TimeCondition(note_id="n2", deadline=DEADLINE)
    assert deadline.match(DEADLINE, [condition]) == ["time:n2"]
    assert deadline.match(DEADLINE + timedelta(days=3), [condition]) == ["time:n2"]


def test_deadline_compares_instants_across_offsets() -> None:
    ist = timezone(timedelta(hours=5, minutes=30))
    condition = TimeCondition(note_id="n2", deadline=datetime(2026, 3, 1, 16, 30, tzinfo=ist))
    assert deadline.match(DEADLINE, [condition]) == ["time:n2"]


def test_overdue_by_and_next_deadline() -> None:
    early = TimeCondition(note_id="a", deadline=DEADLINE)
    late = TimeCondition(note_id="b", deadline=DEADLINE + timedelta(hours=1))
    now = DEADLINE + timedelta(minutes=5)

    assert deadline.overdue_by(now, early) == timedelta(minutes=5)
    assert deadline.next_deadline(now, [early, late]) == late.deadline
    assert deadline.next_deadline(now + timedelta(hours=2), [early, late]) is None
