"""Mood catalogue and the explicit mood query.

Mood notes never go through the trigger engine; they resurface only when the
user asks for a mood.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from murmr_core.models import MoodCondition, Note


@dataclass(slots=True, frozen=True)
class Mood:
    id: str
    label: str
    emoji: str


MOODS: tuple[Mood, ...] = (
    Mood("happy", "Happy", "😊"),
    Mood("sad", "Sad", "😢"),
    Mood("excited", "Excited", "🤩"),
    Mood("anxious", "Anxious", "😰"),
    Mood("calm", "Calm", "😌"),
    Mood("energetic", "Energetic", "⚡"),
    Mood("tired", "Tired", "😴"),
    Mood("focused", "Focused", "🎯"),
)

_BY_ID = {mood.id: mood for mood in MOODS}


def get_mood(mood_id: str) -> Mood:
    mood = _BY_ID.get(mood_id.strip().lower())
    if mood is None:
        raise ValueError(f"unknown mood: {mood_id!r} (expected one of {', '.join(_BY_ID)})")
    return mood


def mood_label(mood_id: str) -> str:
    mood = get_mood(mood_id)
    return f"{mood.emoji} {mood.label}"


def notes_for_mood(notes: Iterable[Note], mood_id: str) -> list[Note]:
    """Unfired notes tagged with ``mood_id``, newest first."""
    wanted = get_mood(mood_id).id
    matched = [
        note
        for note in notes
        if isinstance(note.condition, MoodCondition) and note.condition.mood_id.lower() == wanted and not note.fired
    ]
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(matched, key=lambda note: note.created_at or epoch, reverse=True)
