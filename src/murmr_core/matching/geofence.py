"""Geofence matching over position fixes."""

from __future__ import annotations

import math
from typing import Iterable

from murmr_core.models import LocationCondition, PositionFix

EARTH_RADIUS_M = 6_371_000.0


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_to(fix: PositionFix, condition: LocationCondition) -> float:
    return haversine_meters(fix.latitude, fix.longitude, condition.latitude, condition.longitude)


def match_with_distances(
    fix: PositionFix,
    conditions: Iterable[LocationCondition],
) -> list[tuple[str, float]]:
    """Return ``(condition_id, distance)`` for every geofence containing the fix.

    The condition radius is the only threshold; fix accuracy is not added to it.
    A fix exactly on the boundary is inside.
    """
    matched: list[tuple[str, float]] = []
    for condition in conditions:
        distance = distance_to(fix, condition)
        if distance <= condition.radius_meters:
            matched.append((condition.condition_id, distance))
    return matched


def match(fix: PositionFix, conditions: Iterable[LocationCondition]) -> list[str]:
    return [condition_id for condition_id, _ in match_with_distances(fix, conditions)]


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    return f"{meters / 1000:.1f}km"
