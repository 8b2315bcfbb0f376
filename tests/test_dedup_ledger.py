from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

from murmr_core.ledger import DedupLedger

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


def test_unknown_condition_should_fire(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    assert ledger.should_fire("location:n1", T0, HOUR) is True
    assert ledger.get_entry("location:n1") is None


def test_cooldown_window(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    ledger.record_fire("location:n1", T0)

    assert ledger.should_fire("location:n1", T0 + timedelta(minutes=30), HOUR) is False
    assert ledger.should_fire("location:n1", T0 + HOUR, HOUR) is True
    assert ledger.should_fire("location:n1", T0 + timedelta(minutes=61), HOUR) is True


def test_entries_survive_new_instance(tmp_path: Path) -> None:
    DedupLedger(tmp_path).record_fire("time:n2", T0)

    reopened = DedupLedger(tmp_path)
    entry = reopened.get_entry("time:n2")

    assert entry is not None
    assert entry.last_fired_at == T0
    assert reopened.should_fire("time:n2", T0 + timedelta(minutes=10), HOUR) is False
    assert (tmp_path / "ledger" / "dedup.db").exists()


def test_record_fire_updates_timestamp_and_count(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    ledger.record_fire("location:n1", T0)
    ledger.record_fire("location:n1", T0 + 2 * HOUR)

    assert ledger.fire_count("location:n1") == 2
    assert ledger.get_entry("location:n1").last_fired_at == T0 + 2 * HOUR
    assert [entry.condition_id for entry in ledger.entries()] == ["location:n1"]


def test_record_fire_clears_pending_intent(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    ledger.begin_intent("location:n1", "n1", "location:n1@2026-03-01T09:00:00+00:00", T0)

    pending = ledger.pending_intents()
    assert len(pending) == 1
    assert pending[0].note_id == "n1"
    assert pending[0].started_at == T0

    ledger.record_fire("location:n1", T0)
    assert ledger.pending_intents() == []


def test_clear_intent_leaves_ledger_untouched(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    ledger.begin_intent("time:n2", "n2", "time:n2@x", T0)
    ledger.clear_intent("time:n2")

    assert ledger.pending_intents() == []
    assert ledger.get_entry("time:n2") is None


def test_prune_keeps_listed_conditions(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    ledger.record_fire("location:n1", T0)
    ledger.record_fire("time:gone", T0)
    ledger.begin_intent("time:gone", "gone", "time:gone@x", T0)

    removed = ledger.prune(["location:n1"])

    assert removed == 1
    assert [entry.condition_id for entry in ledger.entries()] == ["location:n1"]
    assert ledger.pending_intents() == []
    assert ledger.prune(["location:n1"]) == 0
