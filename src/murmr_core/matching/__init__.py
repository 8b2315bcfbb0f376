"""Pure matchers for location and time conditions."""

from .deadline import match as match_deadlines
from .geofence import haversine_meters, match as match_geofences, match_with_distances

__all__ = ["haversine_meters", "match_deadlines", "match_geofences", "match_with_distances"]
