import logging
import math
import time
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.integrations.realtime import RealtimeNotifier
from app.models.tracking import OrderTracking, TrackingStatus
from app.observability import log_event
from app.schemas.tracking import GeoPoint
from app.services.errors import Conflict, EngineError, Rejected
from app.services.rider_matcher import distance_m
from app.services.state_machine import is_terminal
from app.services.tracking_service import get_tracking, update_location, update_status

DEFAULT_STEPS = 20
DEFAULT_INTERVAL_S = 3.0


class RiderLocationSource(Protocol):
    def points(self, origin: GeoPoint, destination: GeoPoint) -> Iterator[GeoPoint]: ...


@dataclass
class LinearRouteSource:
    """Straight-line interpolation from origin to destination, ending exactly on it."""

    steps: int = DEFAULT_STEPS

    def points(self, origin: GeoPoint, destination: GeoPoint) -> Iterator[GeoPoint]:
        for step in range(1, self.steps + 1):
            fraction = step / self.steps
            yield GeoPoint(
                lat=origin.lat + (destination.lat - origin.lat) * fraction,
                lng=origin.lng + (destination.lng - origin.lng) * fraction,
            )


def bearing_deg(start: GeoPoint, end: GeoPoint) -> float:
    lat1, lat2 = math.radians(start.lat), math.radians(end.lat)
    dlng = math.radians(end.lng - start.lng)
    x = math.sin(dlng) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlng)
    return math.degrees(math.atan2(x, y)) % 360


def replay_route(
    db: Session,
    notifier: RealtimeNotifier,
    order_id: uuid.UUID,
    *,
    source: RiderLocationSource | None = None,
    interval_s: float = DEFAULT_INTERVAL_S,
    sleep: Callable[[float], None] = time.sleep,
) -> OrderTracking:
    """Drive a rider from the current location to the destination, then mark delivered."""
    source = source or LinearRouteSource()
    tracking = get_tracking(db, order_id)
    if not tracking.rider_id:
        raise Rejected("No rider assigned to this order")
    if is_terminal(tracking.status):
        raise Conflict(f"Order tracking is already {tracking.status.value}")

    origin = GeoPoint(lat=tracking.current_lat, lng=tracking.current_lng)
    destination = GeoPoint(lat=tracking.delivery_lat, lng=tracking.delivery_lng)
    if tracking.status != TrackingStatus.OUT_FOR_DELIVERY:
        update_status(db, notifier, order_id, TrackingStatus.OUT_FOR_DELIVERY)

    previous = origin
    for point in source.points(origin, destination):
        sleep(interval_s)
        step_m = distance_m(previous.lat, previous.lng, point.lat, point.lng)
        update_location(
            db,
            notifier,
            order_id,
            point,
            heading=bearing_deg(previous, point),
            speed=step_m / interval_s if interval_s > 0 else 0,
        )
        previous = point

    log_event("rider_route_replayed", order_id=str(order_id), rider_id=tracking.rider_id)
    return update_status(db, notifier, order_id, TrackingStatus.DELIVERED, location=destination)


def run_simulation(
    session_factory: sessionmaker,
    notifier: RealtimeNotifier,
    order_id: uuid.UUID,
    *,
    source: RiderLocationSource | None = None,
    interval_s: float = DEFAULT_INTERVAL_S,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Background entry point: owns its session and never raises."""
    with session_factory() as db:
        try:
            replay_route(
                db,
                notifier,
                order_id,
                source=source,
                interval_s=interval_s,
                sleep=sleep,
            )
        except (EngineError, SQLAlchemyError):
            db.rollback()
            log_event(
                "rider_simulation_failed",
                level=logging.WARNING,
                order_id=str(order_id),
                exc_info=True,
            )
