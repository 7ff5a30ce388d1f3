import math
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.models.tracking import OrderTracking
from app.services.errors import ValidationError
from app.services.state_machine import PICKUP_ELIGIBLE_STATUSES

# Equatorial radius used by 2dsphere geo indexes
EARTH_RADIUS_M = 6_378_100.0


@dataclass
class NearbyTracking:
    tracking: OrderTracking
    distance_m: float


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    lat1_rad, lng1_rad, lat2_rad, lng2_rad = map(math.radians, [lat1, lng1, lat2, lng2])
    dlat = lat2_rad - lat1_rad
    dlng = lng2_rad - lng1_rad
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _bounding_box(
    lat: float, lng: float, radius_m: float
) -> tuple[float, float, float, float] | None:
    """Return (min_lat, max_lat, min_lng, max_lng), or ``None`` when it wraps.

    The longitude half-width is the widest point of the circle on the sphere,
    ``asin(sin(r / R) / cos(lat))``, which is wider than ``r / (R cos(lat))``.
    """
    angular = radius_m / EARTH_RADIUS_M
    dlat = math.degrees(angular)
    min_lat, max_lat = lat - dlat, lat + dlat
    if min_lat <= -90 or max_lat >= 90:
        return None
    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if ratio >= 1:
        return None
    dlng = math.degrees(math.asin(ratio))
    min_lng, max_lng = lng - dlng, lng + dlng
    if min_lng < -180 or max_lng > 180:
        return None
    return min_lat, max_lat, min_lng, max_lng


def find_nearby(
    db: Session,
    lat: float,
    lng: float,
    max_distance_m: float | None = None,
) -> list[NearbyTracking]:
    """Active trackings awaiting or in delivery within ``max_distance_m``, nearest first."""
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError("Latitude and longitude are out of range")
    radius = settings.nearby_default_max_distance_m if max_distance_m is None else max_distance_m
    if radius < 0:
        raise ValidationError("max_distance_m must not be negative")

    stmt = select(OrderTracking).where(
        OrderTracking.status.in_(PICKUP_ELIGIBLE_STATUSES),
        OrderTracking.is_active.is_(True),
    )
    box = _bounding_box(lat, lng, radius)
    if box is not None:
        min_lat, max_lat, min_lng, max_lng = box
        stmt = stmt.where(
            OrderTracking.current_lat.between(min_lat, max_lat),
            OrderTracking.current_lng.between(min_lng, max_lng),
        )
    elif radius < EARTH_RADIUS_M * math.pi:
        # Box wraps a pole or the antimeridian; latitude alone still bounds the scan
        dlat = math.degrees(radius / EARTH_RADIUS_M)
        stmt = stmt.where(OrderTracking.current_lat.between(lat - dlat, lat + dlat))

    matches = []
    for tracking in db.scalars(stmt):
        meters = distance_m(lat, lng, tracking.current_lat, tracking.current_lng)
        if meters <= radius:
            matches.append(NearbyTracking(tracking=tracking, distance_m=meters))
    matches.sort(key=lambda match: match.distance_m)
    return matches
