"""Delivery tracking lifecycle.

Every status change goes through one conditional ``UPDATE`` guarded on the
row still being non-terminal, so a tracking record that reached
``delivered`` or ``cancelled`` can never leave it even under concurrent
writers. The history entry is stamped only after that update has taken the
row's write lock, which keeps history timestamps in commit order.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.clock import as_utc, now_utc
from app.config import settings
from app.integrations.realtime import (
    RealtimeNotifier,
    publish_safely,
    rider_channel,
    user_channel,
)
from app.models.order import Order
from app.models.tracking import OrderTracking, TrackingHistoryEntry, TrackingStatus
from app.observability import log_event, metrics_store
from app.schemas.tracking import (
    DeliveryDestination,
    GeoPoint,
    HistoryEntryResponse,
    RiderAssignment,
    RiderInfoResponse,
    TrackingHistoryResponse,
    TrackingResponse,
)
from app.services.errors import Conflict, NotFound, Rejected
from app.services.state_machine import (
    TERMINAL_STATUSES,
    default_message,
    ensure_valid_transition,
    estimated_time_remaining_s,
    is_terminal,
    progress_percentage,
)

EVENT_STATUS_UPDATE = "order_status_update"
EVENT_RIDER_ORDER_UPDATE = "order_update"
EVENT_RIDER_ASSIGNED = "rider_assigned"
EVENT_LOCATION_UPDATE = "rider_location_update"


def rider_info_from_assignment(rider: RiderAssignment) -> dict[str, Any]:
    return rider.model_dump(mode="json", exclude={"rider_id"})


def history_view(entry: TrackingHistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        status=entry.status,
        timestamp=as_utc(entry.timestamp),
        location=GeoPoint(lat=entry.lat, lng=entry.lng),
        message=entry.message,
    )


def tracking_view(tracking: OrderTracking, now: datetime | None = None) -> TrackingResponse:
    now = now or now_utc()
    return TrackingResponse(
        id=tracking.id,
        order_id=tracking.order_id,
        customer_id=tracking.customer_id,
        rider_id=tracking.rider_id,
        rider_info=(
            RiderInfoResponse.model_validate(tracking.rider_info) if tracking.rider_info else None
        ),
        status=tracking.status,
        current_location=GeoPoint(lat=tracking.current_lat, lng=tracking.current_lng),
        delivery_address=DeliveryDestination(
            lat=tracking.delivery_lat,
            lng=tracking.delivery_lng,
            address=tracking.delivery_address,
        ),
        restaurant_location=DeliveryDestination(
            lat=tracking.restaurant_lat,
            lng=tracking.restaurant_lng,
            address=tracking.restaurant_address,
        ),
        estimated_delivery_time=as_utc(tracking.estimated_delivery_time),
        actual_delivery_time=as_utc(tracking.actual_delivery_time),
        is_active=tracking.is_active,
        progress_percentage=progress_percentage(tracking.status),
        estimated_time_remaining_s=estimated_time_remaining_s(
            tracking.status, tracking.estimated_delivery_time, now
        ),
        history=[history_view(entry) for entry in tracking.history],
        created_at=as_utc(tracking.created_at),
        updated_at=as_utc(tracking.updated_at),
    )


def _snapshot(tracking: OrderTracking) -> dict[str, Any]:
    return tracking_view(tracking).model_dump(mode="json")


def _load(db: Session, order_id: uuid.UUID) -> OrderTracking | None:
    # populate_existing: conditional updates bypass the identity map
    return db.scalar(
        select(OrderTracking)
        .where(OrderTracking.order_id == order_id)
        .execution_options(populate_existing=True)
    )


def get_tracking(db: Session, order_id: uuid.UUID) -> OrderTracking:
    tracking = _load(db, order_id)
    if tracking is None:
        raise NotFound("Order tracking not found")
    return tracking


def get_history(db: Session, order_id: uuid.UUID) -> TrackingHistoryResponse:
    tracking = get_tracking(db, order_id)
    return TrackingHistoryResponse(
        history=[history_view(entry) for entry in tracking.history],
        current_status=tracking.status,
        progress_percentage=progress_percentage(tracking.status),
        estimated_time_remaining_s=estimated_time_remaining_s(
            tracking.status, tracking.estimated_delivery_time
        ),
        actual_delivery_time=as_utc(tracking.actual_delivery_time),
    )


def list_active_for_customer(db: Session, customer_id: str) -> list[OrderTracking]:
    return list(
        db.scalars(
            select(OrderTracking)
            .where(OrderTracking.customer_id == customer_id, OrderTracking.is_active.is_(True))
            .order_by(OrderTracking.created_at.desc())
        )
    )


def create_tracking(
    db: Session,
    notifier: RealtimeNotifier,
    *,
    order_id: uuid.UUID,
    customer_id: str,
    delivery_address: DeliveryDestination,
    estimated_delivery_time: datetime,
) -> OrderTracking:
    if db.get(Order, order_id) is None:
        raise NotFound("Order not found")
    if _load(db, order_id) is not None:
        raise Conflict("Order tracking already exists")

    now = now_utc()
    tracking = OrderTracking(
        order_id=order_id,
        customer_id=customer_id,
        status=TrackingStatus.PLACED,
        current_lat=settings.restaurant_lat,
        current_lng=settings.restaurant_lng,
        delivery_lat=delivery_address.lat,
        delivery_lng=delivery_address.lng,
        delivery_address=delivery_address.address,
        restaurant_lat=settings.restaurant_lat,
        restaurant_lng=settings.restaurant_lng,
        restaurant_address=settings.restaurant_address,
        estimated_delivery_time=as_utc(estimated_delivery_time),
        is_active=True,
    )
    tracking.history.append(
        TrackingHistoryEntry(
            status=TrackingStatus.PLACED,
            timestamp=now,
            lat=settings.restaurant_lat,
            lng=settings.restaurant_lng,
            message=default_message(TrackingStatus.PLACED),
        )
    )
    db.add(tracking)
    try:
        db.commit()
    except IntegrityError as err:
        db.rollback()
        raise Conflict("Order tracking already exists") from err

    metrics_store.increment("tracking_created_total")
    log_event("tracking_created", order_id=str(order_id), tracking_id=str(tracking.id))
    publish_safely(notifier, user_channel(customer_id), EVENT_STATUS_UPDATE, _snapshot(tracking))
    return tracking


def _raise_for_missed_update(db: Session, order_id: uuid.UUID) -> None:
    db.rollback()
    current = _load(db, order_id)
    if current is None:
        raise NotFound("Order tracking not found")
    raise Conflict(f"Order tracking is already {current.status.value}")


def update_status(
    db: Session,
    notifier: RealtimeNotifier,
    order_id: uuid.UUID,
    status: TrackingStatus,
    *,
    location: GeoPoint | None = None,
    message: str | None = None,
    rider: RiderAssignment | None = None,
) -> OrderTracking:
    """Move a tracking record to ``status`` and append one history entry.

    Leaving ``delivered`` or ``cancelled`` raises ``Conflict``. Revisiting a
    non-terminal status is allowed and still records history.
    """
    current = get_tracking(db, order_id)
    ensure_valid_transition(current.status, status)

    values: dict[str, Any] = {"status": status}
    if location is not None:
        values["current_lat"] = location.lat
        values["current_lng"] = location.lng
    if rider is not None:
        values["rider_id"] = rider.rider_id
        values["rider_info"] = rider_info_from_assignment(rider)
    if is_terminal(status):
        values["is_active"] = False

    result = db.execute(
        update(OrderTracking)
        .where(
            OrderTracking.order_id == order_id,
            OrderTracking.status.not_in(TERMINAL_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        metrics_store.increment("tracking_transition_conflict_total")
        _raise_for_missed_update(db, order_id)

    # Stamped under the row lock taken by the update above
    now = now_utc()
    stamp: dict[str, Any] = {"updated_at": now}
    if status == TrackingStatus.DELIVERED:
        stamp["actual_delivery_time"] = func.coalesce(OrderTracking.actual_delivery_time, now)
    db.execute(
        update(OrderTracking)
        .where(OrderTracking.id == current.id)
        .values(**stamp)
        .execution_options(synchronize_session=False)
    )

    if location is not None:
        lat, lng = location.lat, location.lng
    else:
        lat, lng = db.execute(
            select(OrderTracking.current_lat, OrderTracking.current_lng).where(
                OrderTracking.id == current.id
            )
        ).one()
    db.add(
        TrackingHistoryEntry(
            tracking_id=current.id,
            status=status,
            timestamp=now,
            lat=lat,
            lng=lng,
            message=message or default_message(status),
        )
    )
    db.commit()

    db.expire_all()
    tracking = get_tracking(db, order_id)
    metrics_store.increment("tracking_status_updates_total")
    log_event(
        f"tracking_status_updated status={status.value}",
        order_id=str(order_id),
        tracking_id=str(tracking.id),
        rider_id=tracking.rider_id,
    )

    snapshot = _snapshot(tracking)
    publish_safely(notifier, user_channel(tracking.customer_id), EVENT_STATUS_UPDATE, snapshot)
    if tracking.rider_id:
        publish_safely(
            notifier, rider_channel(tracking.rider_id), EVENT_RIDER_ORDER_UPDATE, snapshot
        )
    return tracking


def assign_rider(
    db: Session,
    notifier: RealtimeNotifier,
    order_id: uuid.UUID,
    rider: RiderAssignment,
) -> OrderTracking:
    get_tracking(db, order_id)
    result = db.execute(
        update(OrderTracking)
        .where(
            OrderTracking.order_id == order_id,
            OrderTracking.status.not_in(TERMINAL_STATUSES),
        )
        .values(
            rider_id=rider.rider_id,
            rider_info=rider_info_from_assignment(rider),
            updated_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        _raise_for_missed_update(db, order_id)
    db.commit()

    db.expire_all()
    tracking = get_tracking(db, order_id)
    metrics_store.increment("tracking_riders_assigned_total")
    log_event(
        "tracking_rider_assigned",
        order_id=str(order_id),
        tracking_id=str(tracking.id),
        rider_id=rider.rider_id,
    )

    snapshot = _snapshot(tracking)
    publish_safely(notifier, user_channel(tracking.customer_id), EVENT_RIDER_ASSIGNED, snapshot)
    publish_safely(notifier, rider_channel(rider.rider_id), EVENT_RIDER_ORDER_UPDATE, snapshot)
    return tracking


def update_location(
    db: Session,
    notifier: RealtimeNotifier,
    order_id: uuid.UUID,
    location: GeoPoint,
    *,
    heading: float = 0,
    speed: float = 0,
) -> OrderTracking:
    """Record a rider position fix. Requires an assigned rider."""
    current = get_tracking(db, order_id)
    if not current.rider_id:
        raise Rejected("No rider assigned to this order")
    if is_terminal(current.status):
        raise Conflict(f"Order tracking is already {current.status.value}")

    result = db.execute(
        update(OrderTracking)
        .where(
            OrderTracking.order_id == order_id,
            OrderTracking.rider_id.is_not(None),
            OrderTracking.status.not_in(TERMINAL_STATUSES),
        )
        .values(current_lat=location.lat, current_lng=location.lng, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        _raise_for_missed_update(db, order_id)
    db.commit()

    db.expire_all()
    tracking = get_tracking(db, order_id)
    metrics_store.increment("tracking_location_updates_total")

    payload = {
        "order_id": str(order_id),
        "location": {"lat": location.lat, "lng": location.lng},
        "heading": heading,
        "speed": speed,
        "rider_info": tracking.rider_info,
        "estimated_time_remaining_s": estimated_time_remaining_s(
            tracking.status, tracking.estimated_delivery_time
        ),
    }
    publish_safely(notifier, user_channel(tracking.customer_id), EVENT_LOCATION_UPDATE, payload)
    return tracking
