"""SQLite-backed dedup ledger with a dispatch-intent outbox."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from murmr_core.models import DedupEntry, parse_timestamp

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DispatchIntent:
    condition_id: str
    note_id: str
    idempotency_key: str
    started_at: datetime


class DedupLedger:
    """Last-fired timestamps per condition, stored under data_root/ledger.

    Entries survive restarts so a relaunch cannot re-fire a condition inside
    its cool-down window. Entries are never expired automatically.
    """

    def __init__(self, data_root: str | Path) -> None:
        self.data_root = Path(data_root)
        self.ledger_dir = self.data_root / "ledger"
        self.db_path = self.ledger_dir / "dedup.db"
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def initialize(self) -> None:
        if self._initialized:
            return
        self.ledger_dir.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dedup_entries (
                    condition_id TEXT PRIMARY KEY,
                    last_fired_at TEXT NOT NULL,
                    fire_count INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dispatch_intents (
                    condition_id TEXT PRIMARY KEY,
                    note_id TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    started_at TEXT NOT NULL
                )
                """
            )
            conn.commit()
        self._initialized = True

    def get_entry(self, condition_id: str) -> DedupEntry | None:
        self.initialize()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT condition_id, last_fired_at FROM dedup_entries WHERE condition_id = ?",
                (condition_id,),
            ).fetchone()
        if row is None:
            return None
        return DedupEntry(condition_id=str(row[0]), last_fired_at=parse_timestamp(str(row[1])))

    def should_fire(self, condition_id: str, now: datetime, cooldown: timedelta) -> bool:
        entry = self.get_entry(condition_id)
        if entry is None:
            return True
        return now - entry.last_fired_at >= cooldown

    def record_fire(self, condition_id: str, now: datetime) -> None:
        """Upsert the entry and clear any pending intent in one transaction."""
        self.initialize()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO dedup_entries(condition_id, last_fired_at, fire_count) VALUES (?, ?, 1)
                ON CONFLICT(condition_id) DO UPDATE SET
                    last_fired_at = excluded.last_fired_at,
                    fire_count = dedup_entries.fire_count + 1
                """,
                (condition_id, now.isoformat()),
            )
            conn.execute("DELETE FROM dispatch_intents WHERE condition_id = ?", (condition_id,))
            conn.commit()
        logger.debug("ledger: recorded fire", extra={"condition_id": condition_id, "fired_at": now.isoformat()})

    def entries(self) -> list[DedupEntry]:
        self.initialize()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT condition_id, last_fired_at FROM dedup_entries ORDER BY last_fired_at DESC"
            ).fetchall()
        return [DedupEntry(condition_id=str(row[0]), last_fired_at=parse_timestamp(str(row[1]))) for row in rows]

    def fire_count(self, condition_id: str) -> int:
        self.initialize()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT fire_count FROM dedup_entries WHERE condition_id = ?",
                (condition_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    def prune(self, keep_condition_ids: Iterable[str]) -> int:
        """Delete entries and intents for conditions outside ``keep_condition_ids``."""
        self.initialize()
        keep = set(keep_condition_ids)
        with self._connect() as conn:
            rows = conn.execute("SELECT condition_id FROM dedup_entries").fetchall()
            stale = [str(row[0]) for row in rows if str(row[0]) not in keep]
            for condition_id in stale:
                conn.execute("DELETE FROM dedup_entries WHERE condition_id = ?", (condition_id,))
                conn.execute("DELETE FROM dispatch_intents WHERE condition_id = ?", (condition_id,))
            conn.commit()
        if stale:
            logger.info("ledger: pruned %s entries", len(stale))
        return len(stale)

    def begin_intent(self, condition_id: str, note_id: str, idempotency_key: str, now: datetime) -> None:
        self.initialize()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO dispatch_intents(condition_id, note_id, idempotency_key, started_at) VALUES (?, ?, ?, ?)
                ON CONFLICT(condition_id) DO UPDATE SET
                    note_id = excluded.note_id,
                    idempotency_key = excluded.idempotency_key,
                    started_at = excluded.started_at
                """,
                (condition_id, note_id, idempotency_key, now.isoformat()),
            )
            conn.commit()

    def clear_intent(self, condition_id: str) -> None:
        self.initialize()
        with self._connect() as conn:
            conn.execute("DELETE FROM dispatch_intents WHERE condition_id = ?", (condition_id,))
            conn.commit()

    def pending_intents(self) -> list[DispatchIntent]:
        self.initialize()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT condition_id, note_id, idempotency_key, started_at FROM dispatch_intents ORDER BY started_at"
            ).fetchall()
        return [
            DispatchIntent(
                condition_id=str(row[0]),
                note_id=str(row[1]),
                idempotency_key=str(row[2]),
                started_at=parse_timestamp(str(row[3])),
            )
            for row in rows
        ]
