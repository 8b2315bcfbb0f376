"""File-backed note store: the condition source and fired-state sink."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from murmr_core.errors import MalformedCondition, StoreSyncFailure
from murmr_core.models import Condition, Note, RadiusPolicy, parse_condition, parse_note
from murmr_core.reporting import ErrorReporter
from murmr_core.store.locks import FileLock, write_json_atomic

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], None]


class ConditionStore(Protocol):
    def list_active_conditions(self, user_id: str) -> list[Condition]: ...

    def list_notes(self, user_id: str) -> list[Note]: ...

    def mark_fired(self, note_id: str, fired_at: datetime) -> bool: ...

    def subscribe(self, callback: ChangeCallback) -> None: ...


def parse_notes(
    raw_notes: list[Any],
    user_id: str | None,
    policy: RadiusPolicy | None,
    reporter: ErrorReporter | None,
) -> list[Note]:
    """Parse API-shaped note dicts, skipping and reporting malformed ones."""
    notes: list[Note] = []
    for raw in raw_notes:
        if not isinstance(raw, dict):
            continue
        if user_id and str(raw.get("userId") or "") != user_id:
            continue
        try:
            notes.append(parse_note(raw, policy))
        except MalformedCondition as exc:
            logger.warning("store: skipping malformed note %s: %s", exc.note_id, exc.message)
            if reporter is not None:
                reporter.report(exc)
    return notes


class ChangeNotifier:
    def __init__(self) -> None:
        self._subscribers: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.warning("store: change subscriber failed: %s", exc)


class JsonNoteStore(ChangeNotifier):
    """Notes in API shape under data_root/notes/notes.json."""

    def __init__(
        self,
        data_root: str | Path,
        policy: RadiusPolicy | None = None,
        reporter: ErrorReporter | None = None,
    ) -> None:
        super().__init__()
        self.notes_dir = Path(data_root) / "notes"
        self.notes_path = self.notes_dir / "notes.json"
        self.policy = policy or RadiusPolicy()
        self.reporter = reporter

    def _load_raw(self) -> list[dict[str, Any]]:
        if not self.notes_path.exists():
            return []
        try:
            data = json.loads(self.notes_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreSyncFailure(f"cannot read notes: {exc}", source=str(self.notes_path)) from exc
        if not isinstance(data, list):
            raise StoreSyncFailure("notes file must hold a JSON list", source=str(self.notes_path))
        return data

    def list_notes(self, user_id: str) -> list[Note]:
        return parse_notes(self._load_raw(), user_id, self.policy, self.reporter)

    def list_active_conditions(self, user_id: str) -> list[Condition]:
        return [note.condition for note in self.list_notes(user_id) if not note.fired]

    def add_note(
        self,
        user_id: str,
        tag_type: str,
        tag_value: dict[str, Any],
        audio_ref: str,
        title: str = "",
        note_id: str | None = None,
    ) -> Note:
        note_id = note_id or uuid.uuid4().hex
        # Reject bad conditions before they reach the file.
        parse_condition(note_id, tag_type, tag_value, policy=self.policy)
        raw = {
            "_id": note_id,
            "userId": user_id,
            "title": title,
            "audioUri": audio_ref,
            "tagType": tag_type,
            "tagValue": tag_value,
            "isTriggered": False,
            "triggeredAt": None,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        with FileLock(self.notes_path):
            notes = self._load_raw()
            if any(str(item.get("_id")) == note_id for item in notes if isinstance(item, dict)):
                raise ValueError(f"note already exists: {note_id}")
            notes.append(raw)
            write_json_atomic(self.notes_path, notes)
        logger.info("store: added %s note %s", tag_type, note_id)
        self._notify()
        return parse_note(raw, self.policy)

    def delete_note(self, note_id: str) -> bool:
        with FileLock(self.notes_path):
            notes = self._load_raw()
            kept = [item for item in notes if not (isinstance(item, dict) and str(item.get("_id")) == note_id)]
            if len(kept) == len(notes):
                return False
            write_json_atomic(self.notes_path, kept)
        logger.info("store: deleted note %s", note_id)
        self._notify()
        return True

    def mark_fired(self, note_id: str, fired_at: datetime) -> bool:
        """Set ``isTriggered`` and ``triggeredAt``; returns False when the note is gone."""
        with FileLock(self.notes_path):
            notes = self._load_raw()
            target = next(
                (item for item in notes if isinstance(item, dict) and str(item.get("_id")) == note_id),
                None,
            )
            if target is None:
                return False
            target["isTriggered"] = True
            target["triggeredAt"] = fired_at.isoformat()
            write_json_atomic(self.notes_path, notes)
        self._notify()
        return True
