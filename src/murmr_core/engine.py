"""Trigger evaluation engine.

Consumes position fixes and clock ticks, matches them against the active
location and time conditions, filters candidates through the dedup ledger and
hands fire decisions to the dispatch sink. Every handler runs under one
reentrant lock, so fixes, ticks and condition-set resyncs are applied one at a
time and in arrival order.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Protocol

from murmr_core.errors import DispatchFailure, MalformedCondition, MurmrError, PermissionDenied, StoreSyncFailure
from murmr_core.ledger import DedupLedger
from murmr_core.matching import deadline as deadline_matcher
from murmr_core.matching import geofence as geofence_matcher
from murmr_core.models import (
    TAG_LOCATION,
    TAG_TIME,
    ClockTick,
    Condition,
    FireDecision,
    LocationCondition,
    MoodCondition,
    PositionFix,
    TimeCondition,
    parse_timestamp,
)
from murmr_core.reporting import ErrorReporter, LoggingReporter

logger = logging.getLogger(__name__)

MODALITIES = frozenset({TAG_LOCATION, TAG_TIME})


class ConditionState(str, Enum):
    ACTIVE = "active"
    FIRING = "firing"
    FIRED = "fired"
    REMOVED = "removed"


class DispatchSink(Protocol):
    def dispatch(self, condition_id: str, note_id: str, payload: dict[str, Any]) -> bool: ...


class FiredStateWriter(Protocol):
    def mark_fired(self, note_id: str, fired_at: datetime) -> bool: ...


@dataclass(slots=True)
class EngineSettings:
    cooldown: timedelta = timedelta(hours=1)
    # 0 means failures are never escalated to the reporter.
    max_dispatch_attempts: int = 0
    enabled_modalities: frozenset[str] = field(default_factory=lambda: MODALITIES)


@dataclass(slots=True)
class EngineStatus:
    active_location: int
    active_time: int
    fired: int
    removed: int
    firing: int
    modalities: list[str]
    failing: dict[str, int]
    next_deadline: str | None
    last_event_at: str | None


class TriggerEngine:
    """Single-writer evaluator for location and time reminders."""

    def __init__(
        self,
        ledger: DedupLedger,
        sink: DispatchSink,
        fired_state: FiredStateWriter | None = None,
        reporter: ErrorReporter | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._ledger = ledger
        self._sink = sink
        self._fired_state = fired_state
        self._reporter: ErrorReporter = reporter or LoggingReporter()
        self._settings = settings or EngineSettings()
        self._lock = threading.RLock()
        self._location: dict[str, LocationCondition] = {}
        self._time: dict[str, TimeCondition] = {}
        self._states: dict[str, ConditionState] = {}
        self._failures: dict[str, int] = {}
        self._episodes: dict[str, str] = {}
        self._modalities = set(self._settings.enabled_modalities) & MODALITIES
        self._last_event_at: datetime | None = None

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # -- context events -------------------------------------------------

    def handle(self, event: PositionFix | ClockTick) -> list[FireDecision]:
        if isinstance(event, PositionFix):
            return self.on_position_fix(event)
        if isinstance(event, ClockTick):
            return self.on_clock_tick(event.now)
        raise TypeError(f"unsupported context event: {type(event).__name__}")

    def on_position_fix(self, fix: PositionFix) -> list[FireDecision]:
        """Fire every active geofence that contains ``fix`` and is out of cool-down.

        A naive ``observed_at`` is read as UTC.
        """
        observed_at = parse_timestamp(fix.observed_at)
        with self._lock:
            self._last_event_at = observed_at
            if TAG_LOCATION not in self._modalities:
                logger.debug("engine: location modality disabled; ignoring fix")
                return []
            fired: list[FireDecision] = []
            try:
                snapshot = list(self._location.values())
                by_id = {condition.condition_id: condition for condition in snapshot}
                candidates = [
                    (by_id[condition_id], {"distanceMeters": round(distance, 1)})
                    for condition_id, distance in geofence_matcher.match_with_distances(fix, snapshot)
                ]
                if candidates:
                    logger.info("engine: fix matched %s geofence(s)", len(candidates))
                self._fire_candidates(candidates, observed_at, fired)
            except Exception as exc:  # noqa: BLE001
                self._handler_failed("on_position_fix", exc)
            return fired

    def on_clock_tick(self, now: datetime) -> list[FireDecision]:
        """Fire every active time condition whose deadline has passed. A naive ``now`` is read as UTC."""
        now = parse_timestamp(now)
        with self._lock:
            self._last_event_at = now
            if TAG_TIME not in self._modalities:
                logger.debug("engine: time modality disabled; ignoring tick")
                return []
            fired: list[FireDecision] = []
            try:
                snapshot = list(self._time.values())
                by_id = {condition.condition_id: condition for condition in snapshot}
                candidates = [
                    (by_id[condition_id], _deadline_details(now, by_id[condition_id]))
                    for condition_id in deadline_matcher.match(now, snapshot)
                ]
                if candidates:
                    logger.info("engine: tick matched %s deadline(s)", len(candidates))
                self._fire_candidates(candidates, now, fired)
            except Exception as exc:  # noqa: BLE001
                self._handler_failed("on_clock_tick", exc)
            return fired

    def on_condition_set_changed(self, conditions: Iterable[Condition]) -> None:
        """Replace the active set with a full resync from the condition store.

        Locally fired conditions are not re-armed. Conditions missing from the
        new set move to REMOVED; a dispatch already in flight for one of them
        completes against the snapshot it started with.
        """
        with self._lock:
            try:
                self._replace_conditions(conditions)
            except Exception as exc:  # noqa: BLE001
                self._handler_failed("on_condition_set_changed", exc)

    # -- modalities -----------------------------------------------------

    def revoke_modality(self, modality: str, reason: str | None = None) -> None:
        with self._lock:
            if modality not in self._modalities:
                return
            self._modalities.discard(modality)
            error = PermissionDenied(modality, reason)
            logger.warning("engine: %s triggering disabled: %s", modality, error.message)
            self._reporter.report(error)

    def restore_modality(self, modality: str) -> None:
        if modality not in MODALITIES:
            raise ValueError(f"unknown modality: {modality}")
        with self._lock:
            self._modalities.add(modality)
            logger.info("engine: %s triggering enabled", modality)

    # -- inspection -----------------------------------------------------

    def state_of(self, condition_id: str) -> ConditionState | None:
        with self._lock:
            return self._states.get(condition_id)

    def active_conditions(self) -> list[Condition]:
        with self._lock:
            return [*self._location.values(), *self._time.values()]

    def status(self) -> EngineStatus:
        with self._lock:
            counts = {state: 0 for state in ConditionState}
            for state in self._states.values():
                counts[state] += 1
            reference = self._last_event_at
            upcoming = deadline_matcher.next_deadline(reference, self._time.values()) if reference else None
            return EngineStatus(
                active_location=len(self._location),
                active_time=len(self._time),
                fired=counts[ConditionState.FIRED],
                removed=counts[ConditionState.REMOVED],
                firing=counts[ConditionState.FIRING],
                modalities=sorted(self._modalities),
                failing=dict(self._failures),
                next_deadline=upcoming.isoformat() if upcoming else None,
                last_event_at=reference.isoformat() if reference else None,
            )

    # -- internals ------------------------------------------------------

    def _replace_conditions(self, conditions: Iterable[Condition]) -> None:
        location: dict[str, LocationCondition] = {}
        timed: dict[str, TimeCondition] = {}
        for condition in conditions:
            if isinstance(condition, MoodCondition):
                continue
            try:
                _validate(condition)
            except MalformedCondition as exc:
                logger.warning("engine: skipping malformed condition %s: %s", condition.condition_id, exc.message)
                self._reporter.report(exc, condition_id=condition.condition_id)
                continue
            condition_id = condition.condition_id
            if self._states.get(condition_id) is ConditionState.FIRED:
                continue
            if isinstance(condition, LocationCondition):
                location[condition_id] = condition
            else:
                timed[condition_id] = condition

        incoming = set(location) | set(timed)
        for condition_id in (set(self._location) | set(self._time)) - incoming:
            self._states[condition_id] = ConditionState.REMOVED
            self._failures.pop(condition_id, None)
            self._episodes.pop(condition_id, None)
        for condition_id in incoming:
            if self._states.get(condition_id) is not ConditionState.FIRING:
                self._states[condition_id] = ConditionState.ACTIVE
        self._location = location
        self._time = timed
        logger.info("engine: active set replaced (location=%s, time=%s)", len(location), len(timed))

    def _fire_candidates(
        self,
        candidates: list[tuple[Condition, dict[str, Any]]],
        now: datetime,
        fired: list[FireDecision],
    ) -> None:
        attempted: set[str] = set()
        for condition, extra in candidates:
            condition_id = condition.condition_id
            # At most one dispatch attempt per condition per event.
            if condition_id in attempted:
                continue
            attempted.add(condition_id)
            if self._states.get(condition_id) is not ConditionState.ACTIVE:
                continue
            decision = self._try_fire(condition, now, extra)
            if decision is not None:
                fired.append(decision)

    def _try_fire(self, condition: Condition, now: datetime, extra: dict[str, Any]) -> FireDecision | None:
        condition_id = condition.condition_id
        if not self._ledger.should_fire(condition_id, now, self._settings.cooldown):
            logger.debug("engine: %s in cool-down", condition_id)
            return None

        key = self._episodes.setdefault(condition_id, f"{condition_id}@{now.isoformat()}")
        payload = _reminder_payload(condition, now, key, extra)
        self._states[condition_id] = ConditionState.FIRING
        self._ledger.begin_intent(condition_id, condition.note_id, key, now)

        failure: MurmrError | None = None
        try:
            acknowledged = bool(self._sink.dispatch(condition_id, condition.note_id, payload))
        except PermissionDenied as exc:
            acknowledged = False
            failure = exc
        except Exception as exc:  # noqa: BLE001
            acknowledged = False
            failure = DispatchFailure(condition_id, str(exc))

        if not acknowledged:
            self._ledger.clear_intent(condition_id)
            self._dispatch_failed(condition_id, failure)
            return None

        self._ledger.record_fire(condition_id, now)
        self._failures.pop(condition_id, None)
        self._episodes.pop(condition_id, None)
        self._location.pop(condition_id, None)
        self._time.pop(condition_id, None)
        if self._states.get(condition_id) is ConditionState.REMOVED:
            logger.info("engine: %s fired after removal from the active set", condition_id)
        self._states[condition_id] = ConditionState.FIRED
        self._persist_fired(condition, now)
        logger.info("engine: fired %s", condition_id, extra={"note_id": condition.note_id, "key": key})
        return FireDecision(
            condition_id=condition_id,
            note_id=condition.note_id,
            kind=condition.kind,
            fired_at=now,
            idempotency_key=key,
            payload=payload,
        )

    def _dispatch_failed(self, condition_id: str, failure: MurmrError | None) -> None:
        state = self._states.get(condition_id)
        if state is ConditionState.REMOVED:
            logger.info("engine: dropped failed dispatch for removed condition %s", condition_id)
            self._episodes.pop(condition_id, None)
            return
        if state is ConditionState.FIRING:
            self._states[condition_id] = ConditionState.ACTIVE
        attempts = self._failures.get(condition_id, 0) + 1
        self._failures[condition_id] = attempts
        message = failure.message if failure else "dispatch not acknowledged"
        logger.warning("engine: dispatch failed for %s (attempt %s): %s", condition_id, attempts, message)
        limit = self._settings.max_dispatch_attempts
        if limit > 0 and attempts % limit == 0:
            self._reporter.report(DispatchFailure(condition_id, message, attempts=attempts))

    def _persist_fired(self, condition: Condition, fired_at: datetime) -> None:
        if self._fired_state is None:
            return
        try:
            updated = self._fired_state.mark_fired(condition.note_id, fired_at)
        except Exception as exc:  # noqa: BLE001
            logger.warning("engine: failed to persist fired state for %s: %s", condition.note_id, exc)
            self._reporter.report(StoreSyncFailure(str(exc), source="mark_fired"), note_id=condition.note_id)
            return
        if not updated:
            logger.info("engine: note %s no longer in store; fired-state write skipped", condition.note_id)

    def _handler_failed(self, handler: str, exc: Exception) -> None:
        logger.exception("engine: %s failed", handler)
        for condition_id, state in list(self._states.items()):
            if state is ConditionState.FIRING:
                self._states[condition_id] = ConditionState.ACTIVE
        error = exc if isinstance(exc, MurmrError) else MurmrError(f"{handler} failed: {exc}")
        self._reporter.report(error, handler=handler)


def _validate(condition: LocationCondition | TimeCondition) -> None:
    if isinstance(condition, LocationCondition):
        values = (condition.latitude, condition.longitude, condition.radius_meters)
        if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in values):
            raise MalformedCondition(condition.note_id, "geofence has non-finite coordinates or radius")
        if abs(condition.latitude) > 90 or abs(condition.longitude) > 180:
            raise MalformedCondition(condition.note_id, "geofence coordinates out of range")
        if condition.radius_meters <= 0:
            raise MalformedCondition(condition.note_id, "geofence radius must be positive")
        return
    if not isinstance(condition.deadline, datetime) or condition.deadline.tzinfo is None:
        raise MalformedCondition(condition.note_id, "deadline must be a timezone-aware datetime")


def _deadline_details(now: datetime, condition: TimeCondition) -> dict[str, Any]:
    overdue = deadline_matcher.overdue_by(now, condition)
    return {"deadline": condition.deadline.isoformat(), "overdueSeconds": int(overdue.total_seconds())}


def _reminder_payload(condition: Condition, now: datetime, key: str, extra: dict[str, Any]) -> dict[str, Any]:
    if isinstance(condition, LocationCondition):
        reminder_type = "location_reminder"
        default_body = "You have a voice note waiting for you"
    else:
        reminder_type = "time_reminder"
        default_body = "Time to listen to your voice note"
    return {
        "title": "Murmr Reminder",
        "body": condition.title or default_body,
        "noteId": condition.note_id,
        "audioRef": condition.audio_ref,
        "type": reminder_type,
        "firedAt": now.isoformat(),
        "idempotencyKey": key,
        **extra,
    }
