"""Notes, trigger conditions and context events."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

from murmr_core.errors import MalformedCondition

DEFAULT_RADIUS_M = 150.0
MIN_RADIUS_M = 50.0
MAX_RADIUS_M = 500.0

TAG_LOCATION = "location"
TAG_TIME = "time"
TAG_MOOD = "mood"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601 text, epoch milliseconds or a datetime into an aware datetime.

    Naive values are treated as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError("timestamp must be finite")
        parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported timestamp type: {type(value).__name__}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True, frozen=True)
class RadiusPolicy:
    default_m: float = DEFAULT_RADIUS_M
    min_m: float = MIN_RADIUS_M
    max_m: float = MAX_RADIUS_M

    def resolve(self, raw: Any) -> float:
        """Return the clamped radius for a raw value, using the default when unset."""
        if raw is None or raw == "":
            value = self.default_m
        else:
            value = float(raw)
            if not math.isfinite(value) or value <= 0:
                value = self.default_m
        return max(self.min_m, min(self.max_m, value))


@dataclass(slots=True, frozen=True)
class LocationCondition:
    note_id: str
    latitude: float
    longitude: float
    radius_meters: float = DEFAULT_RADIUS_M
    title: str = ""
    audio_ref: str = ""

    kind: ClassVar[str] = TAG_LOCATION

    @property
    def condition_id(self) -> str:
        return f"{self.kind}:{self.note_id}"


@dataclass(slots=True, frozen=True)
class TimeCondition:
    note_id: str
    deadline: datetime
    title: str = ""
    audio_ref: str = ""

    kind: ClassVar[str] = TAG_TIME

    @property
    def condition_id(self) -> str:
        return f"{self.kind}:{self.note_id}"


@dataclass(slots=True, frozen=True)
class MoodCondition:
    note_id: str
    mood_id: str
    title: str = ""
    audio_ref: str = ""

    kind: ClassVar[str] = TAG_MOOD

    @property
    def condition_id(self) -> str:
        return f"{self.kind}:{self.note_id}"


Condition = LocationCondition | TimeCondition | MoodCondition


@dataclass(slots=True, frozen=True)
class Note:
    id: str
    user_id: str
    audio_ref: str
    condition: Condition
    title: str = ""
    fired: bool = False
    last_fired_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class PositionFix:
    latitude: float
    longitude: float
    accuracy_meters: float
    observed_at: datetime


@dataclass(slots=True, frozen=True)
class ClockTick:
    now: datetime


@dataclass(slots=True, frozen=True)
class DedupEntry:
    condition_id: str
    last_fired_at: datetime


@dataclass(slots=True, frozen=True)
class FireDecision:
    condition_id: str
    note_id: str
    kind: str
    fired_at: datetime
    idempotency_key: str
    payload: dict[str, Any] = field(default_factory=dict)


def _coordinate(note_id: str | None, raw: dict[str, Any], key: str, bound: float) -> float:
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        raise MalformedCondition(note_id, f"missing {key}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedCondition(note_id, f"{key} is not a number: {value!r}") from None
    if not math.isfinite(number) or abs(number) > bound:
        raise MalformedCondition(note_id, f"{key} out of range: {value!r}")
    return number


def _deadline(note_id: str | None, raw: dict[str, Any]) -> datetime:
    if raw.get("timestamp") not in (None, ""):
        try:
            return parse_timestamp(raw["timestamp"])
        except (ValueError, OverflowError, OSError) as exc:
            raise MalformedCondition(note_id, f"unparsable deadline: {exc}") from None
    date_part = str(raw.get("date", "")).strip()
    time_part = str(raw.get("time", "")).strip()
    if not date_part:
        raise MalformedCondition(note_id, "missing deadline")
    text = f"{date_part[:10]}T{time_part}" if time_part else date_part
    try:
        return parse_timestamp(text)
    except ValueError as exc:
        raise MalformedCondition(note_id, f"unparsable deadline: {exc}") from None


def parse_condition(
    note_id: str,
    tag_type: Any,
    tag_value: Any,
    *,
    policy: RadiusPolicy | None = None,
    title: str = "",
    audio_ref: str = "",
) -> Condition:
    """Build a condition from the ``tagType``/``tagValue`` pair of a note."""
    if not isinstance(tag_value, dict):
        raise MalformedCondition(note_id, "tagValue must be an object")
    policy = policy or RadiusPolicy()
    kind = str(tag_type or "").strip().lower()
    if kind == TAG_LOCATION:
        try:
            radius = policy.resolve(tag_value.get("radius"))
        except (TypeError, ValueError):
            raise MalformedCondition(note_id, f"radius is not a number: {tag_value.get('radius')!r}") from None
        return LocationCondition(
            note_id=note_id,
            latitude=_coordinate(note_id, tag_value, "latitude", 90.0),
            longitude=_coordinate(note_id, tag_value, "longitude", 180.0),
            radius_meters=radius,
            title=title,
            audio_ref=audio_ref,
        )
    if kind == TAG_TIME:
        return TimeCondition(note_id=note_id, deadline=_deadline(note_id, tag_value), title=title, audio_ref=audio_ref)
    if kind == TAG_MOOD:
        mood_id = str(tag_value.get("moodId", "")).strip()
        if not mood_id:
            raise MalformedCondition(note_id, "missing moodId")
        return MoodCondition(note_id=note_id, mood_id=mood_id, title=title, audio_ref=audio_ref)
    raise MalformedCondition(note_id, f"unknown tagType: {tag_type!r}")


def parse_note(raw: dict[str, Any], policy: RadiusPolicy | None = None) -> Note:
    """Parse a note as served by the notes API."""
    note_id = str(raw.get("_id") or raw.get("id") or "").strip()
    if not note_id:
        raise MalformedCondition(None, "note has no id")
    title = str(raw.get("title") or "")
    audio_ref = str(raw.get("audioUri") or raw.get("audioRef") or "")
    condition = parse_condition(
        note_id,
        raw.get("tagType"),
        raw.get("tagValue"),
        policy=policy,
        title=title,
        audio_ref=audio_ref,
    )
    last_fired_at = None
    if raw.get("triggeredAt"):
        try:
            last_fired_at = parse_timestamp(raw["triggeredAt"])
        except (ValueError, OverflowError, OSError):
            last_fired_at = None
    created_at = None
    if raw.get("createdAt"):
        try:
            created_at = parse_timestamp(raw["createdAt"])
        except (ValueError, OverflowError, OSError):
            created_at = None
    return Note(
        id=note_id,
        user_id=str(raw.get("userId") or ""),
        audio_ref=audio_ref,
        condition=condition,
        title=title,
        fired=bool(raw.get("isTriggered", False)),
        last_fired_at=last_fired_at,
        created_at=created_at,
    )
