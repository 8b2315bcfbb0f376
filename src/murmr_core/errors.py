"""Error taxonomy for trigger evaluation."""

from __future__ import annotations

import json
from typing import Any


class MurmrError(Exception):
    """Base error carrying a structured ``error`` payload."""

    code = "murmr_error"

    def __init__(self, message: str, **details: Any) -> None:
        self.error: dict[str, Any] = {"code": self.code, "message": message, **details}
        super().__init__(json.dumps(self.error, default=str))

    @property
    def message(self) -> str:
        return str(self.error["message"])


class PermissionDenied(MurmrError):
    """A capability (location, time, notification) is unavailable."""

    code = "permission_denied"

    def __init__(self, modality: str, message: str | None = None) -> None:
        self.modality = modality
        super().__init__(message or f"{modality} permission denied", modality=modality)


class DispatchFailure(MurmrError):
    """The dispatch sink did not acknowledge a reminder."""

    code = "dispatch_failure"

    def __init__(self, condition_id: str, message: str, attempts: int = 1) -> None:
        self.condition_id = condition_id
        super().__init__(message, condition_id=condition_id, attempts=attempts)


class MalformedCondition(MurmrError):
    """A note carries a trigger condition that cannot be evaluated."""

    code = "malformed_condition"

    def __init__(self, note_id: str | None, message: str) -> None:
        self.note_id = note_id
        super().__init__(message, note_id=note_id)


class StoreSyncFailure(MurmrError):
    """The condition store could not be read."""

    code = "store_sync_failure"

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message, source=source)
