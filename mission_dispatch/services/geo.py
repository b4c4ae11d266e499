"""
Geodistance helpers for offer eligibility.
Uses the haversine formula on a spherical Earth (mean radius 6371 km).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from mission_dispatch.db.models import LocationMode
from mission_dispatch.errors import ValidationFailed
from mission_dispatch.services.time_service import is_fresh

EARTH_RADIUS_KM = 6371.0
DEFAULT_RADIUS_KM = 25.0

# Where a candidate position came from
SOURCE_GPS = "gps"
SOURCE_FALLBACK = "fallback"
SOURCE_FIXED = "fixed"


@dataclass(frozen=True, slots=True)
class GeoPoint:
    lat: float
    lng: float


def validate_coordinates(lat: Optional[float], lng: Optional[float]) -> None:
    """Reject out-of-range coordinates. Both ``None`` is accepted (not geocoded yet)."""
    if lat is None and lng is None:
        return
    if lat is None or lng is None:
        raise ValidationFailed("Latitude and longitude must be set together")
    if not -90.0 <= float(lat) <= 90.0:
        raise ValidationFailed(f"Latitude out of range: {lat}")
    if not -180.0 <= float(lng) <= 180.0:
        raise ValidationFailed(f"Longitude out of range: {lng}")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Great-circle distance between two points.

    Args:
        lat1: Latitude of first point
        lng1: Longitude of first point
        lat2: Latitude of second point
        lng2: Longitude of second point

    Returns:
        Distance in kilometres
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # rounding can push a marginally above 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def effective_radius(radius_km: Optional[float], default: float = DEFAULT_RADIUS_KM) -> float:
    if radius_km is None or radius_km <= 0:
        return default
    return float(radius_km)


def is_within_radius(distance: float, radius_km: Optional[float], default: float = DEFAULT_RADIUS_KM) -> bool:
    return distance <= effective_radius(radius_km, default)


def resolve_position(
    location_mode: Optional[LocationMode],
    *,
    fixed_lat: Optional[float],
    fixed_lng: Optional[float],
    live_lat: Optional[float] = None,
    live_lng: Optional[float] = None,
    live_updated_at: Optional[datetime] = None,
    max_live_age: timedelta,
    now: Optional[datetime] = None,
) -> tuple[Optional[GeoPoint], Optional[str]]:
    """Pick the position used for eligibility.

    ``gps_realtime`` candidates use their live fix when it is fresh enough and
    fall back to the profile coordinate otherwise. ``fixed_address`` candidates
    always use the profile coordinate. ``(None, None)`` means no usable position.
    """
    fixed = (
        GeoPoint(float(fixed_lat), float(fixed_lng))
        if fixed_lat is not None and fixed_lng is not None
        else None
    )
    if location_mode == LocationMode.GPS_REALTIME:
        if (
            live_lat is not None
            and live_lng is not None
            and is_fresh(live_updated_at, max_live_age, now)
        ):
            return GeoPoint(float(live_lat), float(live_lng)), SOURCE_GPS
        if fixed is not None:
            return fixed, SOURCE_FALLBACK
        return None, None
    if fixed is not None:
        return fixed, SOURCE_FIXED
    return None, None
