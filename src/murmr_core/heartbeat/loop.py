"""Periodic clock source for time conditions."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sized

from murmr_core.models import utc_now

logger = logging.getLogger(__name__)

TickFn = Callable[[], "Sized | None"]


@dataclass(slots=True)
class HeartbeatStatus:
    running: bool
    interval_seconds: int
    ticks: int
    fired: int
    last_tick_at: str | None
    last_error: str | None


class HeartbeatLoop:
    """Call ``tick_fn`` every ``interval_seconds`` on a daemon thread.

    Ticks are scheduled against a monotonic deadline, so a slow tick shortens
    the following wait instead of pushing every later tick back. A tick that
    raises is logged and the loop keeps going.
    """

    def __init__(self, interval_seconds: int, tick_fn: TickFn, name: str = "murmr-heartbeat") -> None:
        self.interval_seconds = interval_seconds
        self._tick_fn = tick_fn
        self._name = name
        self._worker: threading.Thread | None = None
        self._halt = threading.Event()
        self._counters = threading.Lock()
        self._ticks = 0
        self._fired = 0
        self._last_tick_at: datetime | None = None
        self._last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def tick_once(self) -> None:
        with self._counters:
            self._ticks += 1
            tick = self._ticks
            self._last_tick_at = utc_now()
        try:
            result = self._tick_fn()
        except Exception as exc:  # noqa: BLE001
            with self._counters:
                self._last_error = str(exc)
            logger.exception("heartbeat: tick %s failed", tick)
            return
        with self._counters:
            self._last_error = None
            if result:
                self._fired += len(result)

    def _run(self) -> None:
        next_at = time.monotonic()
        while not self._halt.is_set():
            self.tick_once()
            next_at += self.interval_seconds
            self._halt.wait(max(0.0, next_at - time.monotonic()))

    def start(self) -> None:
        if self.running:
            return
        if self.interval_seconds <= 0:
            logger.info("heartbeat: disabled (interval=%s)", self.interval_seconds)
            return
        self._halt.clear()
        self._worker = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._worker.start()
        logger.info("heartbeat: ticking every %ss", self.interval_seconds)

    def stop(self, timeout: float = 2.0) -> None:
        self._halt.set()
        worker = self._worker
        if worker is not None and worker.is_alive():
            worker.join(timeout=timeout)
        self._worker = None

    def status(self) -> HeartbeatStatus:
        with self._counters:
            return HeartbeatStatus(
                running=self.running,
                interval_seconds=self.interval_seconds,
                ticks=self._ticks,
                fired=self._fired,
                last_tick_at=self._last_tick_at.isoformat() if self._last_tick_at else None,
                last_error=self._last_error,
            )
