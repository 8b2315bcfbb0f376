"""Position fix sources: JSONL replay and distance/time throttling."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator

from murmr_core.engine import TriggerEngine
from murmr_core.matching.geofence import haversine_meters
from murmr_core.models import FireDecision, PositionFix, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class PositionThrottle:
    """Accept a fix after moving ``min_distance_m`` or after ``min_interval`` elapsed."""

    def __init__(self, min_distance_m: float = 50.0, min_interval: timedelta = timedelta(seconds=60)) -> None:
        self.min_distance_m = min_distance_m
        self.min_interval = min_interval
        self._last: PositionFix | None = None

    def accept(self, fix: PositionFix) -> bool:
        last = self._last
        if last is not None:
            moved = haversine_meters(last.latitude, last.longitude, fix.latitude, fix.longitude)
            elapsed = fix.observed_at - last.observed_at
            if moved < self.min_distance_m and elapsed < self.min_interval:
                return False
        self._last = fix
        return True

    def reset(self) -> None:
        self._last = None


def fix_from_dict(raw: dict[str, Any]) -> PositionFix:
    coords = raw.get("coords") if isinstance(raw.get("coords"), dict) else raw
    latitude = float(coords["latitude"])
    longitude = float(coords["longitude"])
    if abs(latitude) > 90 or abs(longitude) > 180:
        raise ValueError("coordinates out of range")
    accuracy = coords.get("accuracy", coords.get("accuracyMeters", 0.0))
    stamp = raw.get("timestamp", raw.get("observedAt"))
    observed_at: datetime = parse_timestamp(stamp) if stamp not in (None, "") else utc_now()
    return PositionFix(
        latitude=latitude,
        longitude=longitude,
        accuracy_meters=float(accuracy or 0.0),
        observed_at=observed_at,
    )


def read_fixes(path: str | Path) -> Iterator[PositionFix]:
    """Yield fixes from a JSONL file, skipping lines that do not parse."""
    with Path(path).open("r", encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
                if not isinstance(raw, dict):
                    raise ValueError("fix must be an object")
                yield fix_from_dict(raw)
            except (KeyError, TypeError, ValueError, OverflowError) as exc:
                logger.warning("position: skipping line %s of %s: %s", line_no, path, exc)


def replay_fixes(
    engine: TriggerEngine,
    fixes: Iterable[PositionFix],
    throttle: PositionThrottle | None = None,
) -> list[FireDecision]:
    """Feed fixes to the engine in order; the throttle drops fixes that are too close."""
    fired: list[FireDecision] = []
    for fix in fixes:
        if throttle is not None and not throttle.accept(fix):
            continue
        fired.extend(engine.on_position_fix(fix))
    return fired
