"""Note store backed by the notes REST API."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime
from typing import Any

from murmr_core.errors import StoreSyncFailure
from murmr_core.models import Condition, Note, RadiusPolicy
from murmr_core.reporting import ErrorReporter
from murmr_core.store.notes import ChangeNotifier, parse_notes

logger = logging.getLogger(__name__)


class HttpNoteStore(ChangeNotifier):
    """Reads notes from ``GET /notes`` and marks them via ``PUT /notes/{id}/trigger``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: int = 10,
        policy: RadiusPolicy | None = None,
        reporter: ErrorReporter | None = None,
    ) -> None:
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.policy = policy or RadiusPolicy()
        self.reporter = reporter

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> tuple[int, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(
            url=f"{self.base_url}{path}",
            method=method,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            data=data,
        )
        with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:  # noqa: S310
            body = response.read().decode("utf-8", errors="replace")
            return response.status, (json.loads(body) if body else None)

    def list_notes(self, user_id: str) -> list[Note]:
        query = urllib.parse.urlencode({"userId": user_id})
        try:
            status, body = self._request("GET", f"/notes?{query}")
        except urllib.error.HTTPError as exc:
            raise StoreSyncFailure(f"GET /notes failed status={exc.code}", source=self.base_url) from exc
        except (urllib.error.URLError, OSError, json.JSONDecodeError) as exc:
            raise StoreSyncFailure(f"GET /notes failed: {exc}", source=self.base_url) from exc
        if not 200 <= status < 300:
            raise StoreSyncFailure(f"GET /notes failed status={status}", source=self.base_url)
        if isinstance(body, dict):
            if body.get("success") is False:
                raise StoreSyncFailure(str(body.get("error") or "notes API reported failure"), source=self.base_url)
            items = body.get("data", [])
        else:
            items = body
        if not isinstance(items, list):
            raise StoreSyncFailure("notes API returned no list", source=self.base_url)
        return parse_notes(items, user_id, self.policy, self.reporter)

    def list_active_conditions(self, user_id: str) -> list[Condition]:
        return [note.condition for note in self.list_notes(user_id) if not note.fired]

    def mark_fired(self, note_id: str, fired_at: datetime) -> bool:
        path = f"/notes/{urllib.parse.quote(note_id, safe='')}/trigger"
        try:
            status, _ = self._request("PUT", path, {"triggeredAt": fired_at.isoformat()})
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                return False
            raise StoreSyncFailure(f"PUT {path} failed status={exc.code}", source=self.base_url) from exc
        except (urllib.error.URLError, OSError, json.JSONDecodeError) as exc:
            raise StoreSyncFailure(f"PUT {path} failed: {exc}", source=self.base_url) from exc
        if not 200 <= status < 300:
            raise StoreSyncFailure(f"PUT {path} failed status={status}", source=self.base_url)
        logger.info("store: marked note %s triggered", note_id)
        self._notify()
        return True
