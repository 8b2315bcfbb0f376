"""Advisory lock files and atomic writes for the JSON note store."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class LockTimeout(TimeoutError):
    """Another process kept the lock for longer than we were willing to wait."""

    def __init__(self, lock_path: Path, waited_seconds: float) -> None:
        self.error = {
            "code": "lock_timeout",
            "message": f"note store busy: {lock_path} still held after {waited_seconds:.1f}s",
            "lock_path": str(lock_path),
            "waited_seconds": round(waited_seconds, 3),
        }
        super().__init__(self.error["message"])


@dataclass(slots=True, frozen=True)
class LockOwner:
    pid: int
    acquired_at: float

    @classmethod
    def current(cls) -> LockOwner:
        return cls(pid=os.getpid(), acquired_at=time.time())

    @classmethod
    def read(cls, lock_path: Path) -> LockOwner | None:
        try:
            raw = json.loads(lock_path.read_text(encoding="utf-8"))
            return cls(pid=int(raw["pid"]), acquired_at=float(raw["acquired_at"]))
        except (OSError, ValueError, TypeError, KeyError):
            return None

    def is_stale(self, stale_after_seconds: float) -> bool:
        if time.time() - self.acquired_at > stale_after_seconds:
            return True
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False


def _is_stale(lock_path: Path, stale_after_seconds: float) -> bool:
    owner = LockOwner.read(lock_path)
    return owner is None or owner.is_stale(stale_after_seconds)


class FileLock:
    """Exclusive ``<target>.lock`` file; a dead or expired owner's lock is taken over."""

    def __init__(self, target: str | Path, *, timeout_seconds: float = 10.0, stale_after_seconds: float = 1800.0) -> None:
        self.path = Path(f"{target}{LOCK_SUFFIX}")
        self.timeout_seconds = timeout_seconds
        self.stale_after_seconds = stale_after_seconds
        self.held = False

    def acquire(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        delay = 0.02
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if _is_stale(self.path, self.stale_after_seconds):
                    logger.warning("locks: reclaiming stale lock %s", self.path)
                    self.path.unlink(missing_ok=True)
                    continue
                waited = time.monotonic() - started
                if waited >= self.timeout_seconds:
                    raise LockTimeout(self.path, waited) from None
                time.sleep(delay)
                delay = min(0.5, delay * 2)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(asdict(LockOwner.current()), fh)
            self.held = True
            return self

    def release(self) -> None:
        if self.held:
            self.path.unlink(missing_ok=True)
            self.held = False

    def __enter__(self) -> FileLock:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass(slots=True)
class LockSweep:
    scanned: int = 0
    removed: int = 0
    errors: list[str] = field(default_factory=list)


def sweep_stale_locks(root: str | Path, stale_after_seconds: float = 1800.0) -> LockSweep:
    """Delete lock files under ``root`` whose owner is gone or too old."""
    sweep = LockSweep()
    for lock_path in Path(root).rglob(f"*{LOCK_SUFFIX}"):
        sweep.scanned += 1
        if not _is_stale(lock_path, stale_after_seconds):
            continue
        try:
            lock_path.unlink()
            sweep.removed += 1
        except OSError as exc:
            sweep.errors.append(f"{lock_path}: {exc}")
    return sweep


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write through a sibling temp file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False)
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
