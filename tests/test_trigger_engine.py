from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from murmr_core.engine import ConditionState, EngineSettings, TriggerEngine
from murmr_core.errors import MurmrError, PermissionDenied
from murmr_core.ledger import DedupLedger
from murmr_core.matching.geofence import haversine_meters
from murmr_core.models import ClockTick, LocationCondition, MoodCondition, PositionFix, TimeCondition

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
BANGALORE = LocationCondition(note_id="n1", latitude=12.9716, longitude=77.5946, radius_meters=150, title="Buy milk")


class RecordingSink:
    def __init__(self, results: list[object] | None = None) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self.results = list(results or [])

    def dispatch(self, condition_id: str, note_id: str, payload: dict) -> bool:
        self.calls.append((condition_id, note_id, payload))
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return bool(result)
        return True


class FakeFiredState:
    def __init__(self, known: set[str] | None = None) -> None:
        self.known = set(known or set())
        self.marked: list[tuple[str, datetime]] = []

    def mark_fired(self, note_id: str, fired_at: datetime) -> bool:
        self.marked.append((note_id, fired_at))
        return note_id in self.known


class ListReporter:
    def __init__(self) -> None:
        self.errors: list[tuple[MurmrError, dict]] = []

    def report(self, error: MurmrError, **details) -> None:
        self.errors.append((error, details))


def _fix(lat: float, lon: float, at: datetime) -> PositionFix:
    return PositionFix(latitude=lat, longitude=lon, accuracy_meters=10.0, observed_at=at)


def _engine(tmp_path: Path, sink: RecordingSink, **kwargs) -> tuple[TriggerEngine, ListReporter, FakeFiredState]:
    reporter = ListReporter()
    fired_state = kwargs.pop("fired_state", FakeFiredState({"n1", "n2"}))
    engine = TriggerEngine(
        DedupLedger(tmp_path),
        sink,
        fired_state=fired_state,
        reporter=reporter,
        settings=kwargs.pop("settings", EngineSettings()),
    )
    return engine, reporter, fired_state


def test_fix_at_condition_center_fires_once_and_marks_fired(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, fired_state = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    fired = engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert len(sink.calls) == 1
    condition_id, note_id, payload = sink.calls[0]
    assert condition_id == "location:n1"
    assert note_id == "n1"
    assert payload["type"] == "location_reminder"
    assert payload["body"] == "Buy milk"
    assert payload["distanceMeters"] == 0.0
    assert [decision.condition_id for decision in fired] == ["location:n1"]
    assert engine.state_of("location:n1") is ConditionState.FIRED
    assert fired_state.marked == [("n1", T0)]
    assert engine.active_conditions() == []


def test_same_fix_twice_after_fire_does_not_dispatch_again(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])
    fix = _fix(12.9716, 77.5946, T0)

    engine.on_position_fix(fix)
    engine.on_position_fix(fix)

    assert len(sink.calls) == 1


def test_fix_exactly_on_boundary_matches(tmp_path: Path) -> None:
    fix = _fix(12.9730, 77.5946, T0)
    distance = haversine_meters(fix.latitude, fix.longitude, BANGALORE.latitude, BANGALORE.longitude)
    condition = LocationCondition(note_id="n1", latitude=12.9716, longitude=77.5946, radius_meters=distance)
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([condition])

    engine.on_position_fix(fix)

    assert len(sink.calls) == 1


def test_fix_outside_radius_does_not_dispatch(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    engine.on_position_fix(_fix(12.9816, 77.5946, T0))

    assert sink.calls == []
    assert engine.state_of("location:n1") is ConditionState.ACTIVE


def test_deadline_fires_at_deadline_not_before(tmp_path: Path) -> None:
    deadline = T0 + timedelta(hours=2)
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([TimeCondition(note_id="n2", deadline=deadline)])

    assert engine.on_clock_tick(deadline - timedelta(seconds=1)) == []
    assert sink.calls == []

    fired = engine.handle(ClockTick(now=deadline))

    assert len(sink.calls) == 1
    assert sink.calls[0][2]["type"] == "time_reminder"
    assert sink.calls[0][2]["body"] == "Time to listen to your voice note"
    assert fired[0].kind == "time"
    assert engine.state_of("time:n2") is ConditionState.FIRED


def test_failed_dispatch_retries_on_next_fix_within_same_episode(tmp_path: Path) -> None:
    sink = RecordingSink([False, True])
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])
    ledger = DedupLedger(tmp_path)

    first = engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert first == []
    assert engine.state_of("location:n1") is ConditionState.ACTIVE
    assert ledger.get_entry("location:n1") is None

    second = engine.on_position_fix(_fix(12.9716, 77.5946, T0 + timedelta(seconds=10)))

    assert len(second) == 1
    assert len(sink.calls) == 2
    assert sink.calls[0][2]["idempotencyKey"] == sink.calls[1][2]["idempotencyKey"]
    assert ledger.fire_count("location:n1") == 1
    assert engine.state_of("location:n1") is ConditionState.FIRED


def test_dispatch_exception_is_contained_and_condition_stays_active(tmp_path: Path) -> None:
    sink = RecordingSink([RuntimeError("push service down")])
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    assert engine.on_position_fix(_fix(12.9716, 77.5946, T0)) == []
    assert engine.state_of("location:n1") is ConditionState.ACTIVE
    assert engine.status().failing == {"location:n1": 1}


def test_cooldown_survives_restart_and_suppresses_refire(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])
    engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    # Fresh engine over the same ledger, fed a store snapshot that still lists the note.
    restarted, _, _ = _engine(tmp_path, sink)
    restarted.on_condition_set_changed([BANGALORE])
    restarted.on_position_fix(_fix(12.9716, 77.5946, T0 + timedelta(minutes=30)))

    assert len(sink.calls) == 1
    assert restarted.state_of("location:n1") is ConditionState.ACTIVE


def test_resync_does_not_rearm_locally_fired_condition(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink, settings=EngineSettings(cooldown=timedelta(0)))
    engine.on_condition_set_changed([BANGALORE])
    engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    engine.on_condition_set_changed([BANGALORE])
    engine.on_position_fix(_fix(12.9716, 77.5946, T0 + timedelta(hours=5)))

    assert len(sink.calls) == 1
    assert engine.state_of("location:n1") is ConditionState.FIRED


def test_condition_removed_mid_dispatch_completes_without_error(tmp_path: Path) -> None:
    engine_ref: list[TriggerEngine] = []

    class RemovingSink(RecordingSink):
        def dispatch(self, condition_id: str, note_id: str, payload: dict) -> bool:
            engine_ref[0].on_condition_set_changed([])
            return super().dispatch(condition_id, note_id, payload)

    sink = RemovingSink()
    engine, reporter, fired_state = _engine(tmp_path, sink, fired_state=FakeFiredState(set()))
    engine_ref.append(engine)
    engine.on_condition_set_changed([BANGALORE])

    fired = engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert len(fired) == 1
    assert fired_state.marked == [("n1", T0)]
    assert reporter.errors == []
    assert engine.state_of("location:n1") is ConditionState.FIRED
    assert engine.active_conditions() == []


def test_removed_condition_is_not_matched(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])
    engine.on_condition_set_changed([])

    engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert sink.calls == []
    assert engine.state_of("location:n1") is ConditionState.REMOVED


def test_revoked_location_still_fires_time_conditions(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, reporter, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE, TimeCondition(note_id="n2", deadline=T0)])

    engine.revoke_modality("location", "user denied location")
    engine.on_position_fix(_fix(12.9716, 77.5946, T0))
    engine.on_clock_tick(T0)

    assert [call[0] for call in sink.calls] == ["time:n2"]
    assert isinstance(reporter.errors[0][0], PermissionDenied)
    assert engine.status().modalities == ["time"]


def test_persistent_dispatch_failure_is_reported_every_n_attempts(tmp_path: Path) -> None:
    sink = RecordingSink([False, False, False, False])
    engine, reporter, _ = _engine(tmp_path, sink, settings=EngineSettings(max_dispatch_attempts=2))
    engine.on_condition_set_changed([BANGALORE])

    for minute in range(4):
        engine.on_position_fix(_fix(12.9716, 77.5946, T0 + timedelta(minutes=minute)))

    codes = [error.error["code"] for error, _ in reporter.errors]
    assert codes == ["dispatch_failure", "dispatch_failure"]
    assert reporter.errors[-1][0].error["attempts"] == 4
    assert engine.state_of("location:n1") is ConditionState.ACTIVE


def test_unlimited_attempts_never_reports(tmp_path: Path) -> None:
    sink = RecordingSink([False] * 5)
    engine, reporter, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    for minute in range(5):
        engine.on_position_fix(_fix(12.9716, 77.5946, T0 + timedelta(minutes=minute)))

    assert reporter.errors == []


def test_malformed_and_mood_conditions_are_skipped(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, reporter, _ = _engine(tmp_path, sink)
    broken = LocationCondition(note_id="bad", latitude=float("nan"), longitude=77.5, radius_meters=100)
    naive = TimeCondition(note_id="naive", deadline=datetime(2026, 1, 1))

    engine.on_condition_set_changed([broken, naive, MoodCondition(note_id="m1", mood_id="happy"), BANGALORE])

    assert engine.active_conditions() == [BANGALORE]
    assert [error.error["code"] for error, _ in reporter.errors] == ["malformed_condition", "malformed_condition"]
    assert engine.state_of("mood:m1") is None


def test_intent_is_open_during_dispatch_and_cleared_on_ack(tmp_path: Path) -> None:
    ledger = DedupLedger(tmp_path)
    seen: list[int] = []

    class InspectingSink(RecordingSink):
        def dispatch(self, condition_id: str, note_id: str, payload: dict) -> bool:
            seen.append(len(ledger.pending_intents()))
            return super().dispatch(condition_id, note_id, payload)

    engine, _, _ = _engine(tmp_path, InspectingSink())
    engine.on_condition_set_changed([BANGALORE])
    engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert seen == [1]
    assert ledger.pending_intents() == []


def test_ledger_failure_is_caught_at_handler_boundary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sink = RecordingSink()
    engine, reporter, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    def _boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(DedupLedger, "should_fire", _boom)

    assert engine.on_position_fix(_fix(12.9716, 77.5946, T0)) == []
    assert engine.state_of("location:n1") is ConditionState.ACTIVE
    assert reporter.errors and reporter.errors[0][1]["handler"] == "on_position_fix"


def test_fired_state_write_failure_is_reported_but_fire_stands(tmp_path: Path) -> None:
    class BrokenFiredState:
        def mark_fired(self, note_id: str, fired_at: datetime) -> bool:
            raise ConnectionError("notes API unreachable")

    sink = RecordingSink()
    engine, reporter, _ = _engine(tmp_path, sink, fired_state=BrokenFiredState())
    engine.on_condition_set_changed([BANGALORE])

    fired = engine.on_position_fix(_fix(12.9716, 77.5946, T0))

    assert len(fired) == 1
    assert engine.state_of("location:n1") is ConditionState.FIRED
    assert reporter.errors[0][0].error["code"] == "store_sync_failure"


def test_naive_tick_is_read_as_utc(tmp_path: Path) -> None:
    sink = RecordingSink()
    engine, reporter, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([TimeCondition(note_id="n2", deadline=T0)])

    assert engine.on_clock_tick(datetime(2026, 3, 1, 8, 59, 59)) == []
    fired = engine.on_clock_tick(datetime(2026, 3, 1, 9, 0, 30))

    assert [condition_id for condition_id, _, _ in sink.calls] == ["time:n2"]
    assert fired[0].fired_at == T0 + timedelta(seconds=30)
    assert sink.calls[0][2]["overdueSeconds"] == 30
    assert reporter.errors == []


def test_naive_fix_is_read_as_utc_and_respects_cooldown(tmp_path: Path) -> None:
    sink = RecordingSink()
    ledger = DedupLedger(tmp_path)
    reporter = ListReporter()
    engine = TriggerEngine(ledger, sink, fired_state=FakeFiredState({"n1"}), reporter=reporter)
    engine.on_condition_set_changed([BANGALORE])

    engine.on_position_fix(_fix(12.9716, 77.5946, datetime(2026, 3, 1, 9, 0)))
    restarted = TriggerEngine(ledger, sink, fired_state=FakeFiredState({"n1"}), reporter=reporter)
    restarted.on_condition_set_changed([BANGALORE])
    fired = restarted.on_position_fix(_fix(12.9716, 77.5946, datetime(2026, 3, 1, 9, 10)))

    assert fired == []
    assert len(sink.calls) == 1
    assert reporter.errors == []
    assert ledger.entries()[0].last_fired_at == T0


class SlowSink(RecordingSink):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay
        self.entered = threading.Event()
        self.events: list[str] = []

    def dispatch(self, condition_id: str, note_id: str, payload: dict) -> bool:
        self.entered.set()
        time.sleep(self.delay)
        self.calls.append((condition_id, note_id, payload))
        self.events.append("dispatched")
        return True


def test_concurrent_fixes_dispatch_a_condition_once(tmp_path: Path) -> None:
    sink = SlowSink(delay=0.05)
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])
    start = threading.Barrier(8)
    results: list[int] = []

    def _worker() -> None:
        start.wait()
        results.append(len(engine.on_position_fix(_fix(12.9716, 77.5946, T0))))

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert [condition_id for condition_id, _, _ in sink.calls] == ["location:n1"]
    assert sorted(results) == [0] * 7 + [1]
    assert engine.state_of("location:n1") is ConditionState.FIRED


def test_resync_from_another_thread_waits_for_dispatch(tmp_path: Path) -> None:
    sink = SlowSink(delay=0.1)
    engine, _, _ = _engine(tmp_path, sink)
    engine.on_condition_set_changed([BANGALORE])

    def _resync() -> None:
        sink.entered.wait(timeout=5)
        engine.on_condition_set_changed([])
        sink.events.append("resynced")

    fixer = threading.Thread(target=engine.on_position_fix, args=(_fix(12.9716, 77.5946, T0),))
    resyncer = threading.Thread(target=_resync)
    resyncer.start()
    fixer.start()
    fixer.join(timeout=5)
    resyncer.join(timeout=5)

    assert sink.events == ["dispatched", "resynced"]
    assert engine.state_of("location:n1") is ConditionState.FIRED
    assert engine.active_conditions() == []
