"""Error-reporting collaborators."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from murmr_core.errors import MurmrError

logger = logging.getLogger(__name__)


class ErrorReporter(Protocol):
    def report(self, error: MurmrError, **details: Any) -> None: ...


class EventLogReporter:
    """Append reported errors as JSON lines to data_root/errors.log."""

    def __init__(self, data_root: str | Path) -> None:
        self.path = Path(data_root) / "errors.log"

    def report(self, error: MurmrError, **details: Any) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "code": error.error.get("code"),
            "message": error.error.get("message"),
            "details": {**{k: v for k, v in error.error.items() if k not in {"code", "message"}}, **details},
        }
        logger.warning("reporter: %s: %s", record["code"], record["message"])
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            logger.error("reporter: failed to write %s: %s", self.path, exc)

    def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines()[-limit:]:
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(raw, dict):
                rows.append(raw)
        return rows


class LoggingReporter:
    """Report through logging only."""

    def report(self, error: MurmrError, **details: Any) -> None:
        logger.warning("reporter: %s", error.error, extra={"details": details})
