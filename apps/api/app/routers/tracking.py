import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session, sessionmaker

from app.auth.dependencies import (
    BACKOFFICE_ROLES,
    ROLE_CUSTOMER,
    ROLE_RIDER,
    AuthContext,
    ensure_self_or_backoffice,
    get_auth_context,
    require_roles,
)
from app.config import settings
from app.db.session import get_db, get_session_factory
from app.integrations.realtime import RealtimeNotifier, get_realtime_notifier
from app.models.tracking import OrderTracking
from app.schemas.tracking import (
    GeoPoint,
    LocationUpdateRequest,
    LocationUpdateResponse,
    NearbyTrackingListResponse,
    NearbyTrackingResponse,
    RiderAssignment,
    SimulationResponse,
    StatusUpdateRequest,
    TrackingCreateRequest,
    TrackingHistoryResponse,
    TrackingListResponse,
    TrackingResponse,
)
from app.services import tracking_service
from app.services.rider_matcher import find_nearby
from app.services.rider_simulation import (
    DEFAULT_INTERVAL_S,
    DEFAULT_STEPS,
    LinearRouteSource,
    run_simulation,
)
from app.services.state_machine import estimated_time_remaining_s

router = APIRouter(prefix="/api/v1/tracking", tags=["tracking"])


def _forbidden() -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def _ensure_can_view(auth: AuthContext, tracking: OrderTracking) -> None:
    if auth.is_backoffice:
        return
    if auth.user_id in (tracking.customer_id, tracking.rider_id):
        return
    raise _forbidden()


def _ensure_assigned_rider(auth: AuthContext, tracking: OrderTracking) -> None:
    if auth.is_backoffice:
        return
    if auth.role == ROLE_RIDER and tracking.rider_id == auth.user_id:
        return
    raise _forbidden()


@router.post(
    "",
    response_model=TrackingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start tracking an order",
)
def create_tracking_endpoint(
    payload: TrackingCreateRequest,
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_realtime_notifier),
    auth: AuthContext = Depends(require_roles(ROLE_CUSTOMER, *BACKOFFICE_ROLES)),
) -> TrackingResponse:
    ensure_self_or_backoffice(auth, payload.customer_id)
    tracking = tracking_service.create_tracking(
        db,
        notifier,
        order_id=payload.order_id,
        customer_id=payload.customer_id,
        delivery_address=payload.delivery_address,
        estimated_delivery_time=payload.estimated_delivery_time,
    )
    return tracking_service.tracking_view(tracking)


@router.get("/order/{order_id}", response_model=TrackingResponse, summary="Tracking for an order")
def get_tracking_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> TrackingResponse:
    tracking = tracking_service.get_tracking(db, order_id)
    _ensure_can_view(auth, tracking)
    return tracking_service.tracking_view(tracking)


@router.put("/status/{order_id}", response_model=TrackingResponse, summary="Update tracking status")
def update_status_endpoint(
    order_id: uuid.UUID,
    payload: StatusUpdateRequest,
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_realtime_notifier),
    auth: AuthContext = Depends(require_roles(ROLE_RIDER, *BACKOFFICE_ROLES)),
) -> TrackingResponse:
    _ensure_assigned_rider(auth, tracking_service.get_tracking(db, order_id))
    if payload.rider is not None and not auth.is_backoffice:
        raise _forbidden()
    tracking = tracking_service.update_status(
        db,
        notifier,
        order_id,
        payload.status,
        location=payload.location,
        message=payload.message,
        rider=payload.rider,
    )
    return tracking_service.tracking_view(tracking)


@router.put("/rider/{order_id}", response_model=TrackingResponse, summary="Assign a rider")
def assign_rider_endpoint(
    order_id: uuid.UUID,
    payload: RiderAssignment,
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_realtime_notifier),
    _auth: AuthContext = Depends(require_roles(*BACKOFFICE_ROLES)),
) -> TrackingResponse:
    tracking = tracking_service.assign_rider(db, notifier, order_id, payload)
    return tracking_service.tracking_view(tracking)


@router.put(
    "/location/{order_id}",
    response_model=LocationUpdateResponse,
    summary="Report the rider's position",
)
def update_location_endpoint(
    order_id: uuid.UUID,
    payload: LocationUpdateRequest,
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_realtime_notifier),
    auth: AuthContext = Depends(require_roles(ROLE_RIDER, *BACKOFFICE_ROLES)),
) -> LocationUpdateResponse:
    _ensure_assigned_rider(auth, tracking_service.get_tracking(db, order_id))
    tracking = tracking_service.update_location(
        db,
        notifier,
        order_id,
        GeoPoint(lat=payload.lat, lng=payload.lng),
        heading=payload.heading,
        speed=payload.speed,
    )
    return LocationUpdateResponse(
        order_id=order_id,
        current_location=GeoPoint(lat=tracking.current_lat, lng=tracking.current_lng),
        estimated_time_remaining_s=estimated_time_remaining_s(
            tracking.status, tracking.estimated_delivery_time
        ),
    )


@router.get(
    "/customer/{customer_id}/active",
    response_model=TrackingListResponse,
    summary="Active trackings for a customer",
)
def list_active_endpoint(
    customer_id: str,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> TrackingListResponse:
    ensure_self_or_backoffice(auth, customer_id)
    trackings = tracking_service.list_active_for_customer(db, customer_id)
    items = [tracking_service.tracking_view(tracking) for tracking in trackings]
    return TrackingListResponse(items=items, count=len(items))


@router.get(
    "/nearby",
    response_model=NearbyTrackingListResponse,
    summary="Orders awaiting pickup or in delivery near a point",
)
def nearby_endpoint(
    lat: float = Query(ge=-90, le=90),
    lng: float = Query(ge=-180, le=180),
    max_distance_m: float | None = Query(default=None, ge=0),
    db: Session = Depends(get_db),
    _auth: AuthContext = Depends(require_roles(ROLE_RIDER, *BACKOFFICE_ROLES)),
) -> NearbyTrackingListResponse:
    matches = find_nearby(db, lat, lng, max_distance_m)
    items = [
        NearbyTrackingResponse(
            distance_m=round(match.distance_m, 1),
            tracking=tracking_service.tracking_view(match.tracking),
        )
        for match in matches
    ]
    return NearbyTrackingListResponse(items=items, count=len(items))


@router.get(
    "/history/{order_id}",
    response_model=TrackingHistoryResponse,
    summary="Tracking history for an order",
)
def history_endpoint(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> TrackingHistoryResponse:
    _ensure_can_view(auth, tracking_service.get_tracking(db, order_id))
    return tracking_service.get_history(db, order_id)


@router.post(
    "/{order_id}/simulate",
    response_model=SimulationResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Replay a straight rider route to the destination (testing mode only)",
)
def simulate_endpoint(
    order_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    steps: int = Query(default=DEFAULT_STEPS, ge=1, le=200),
    interval_s: float = Query(default=DEFAULT_INTERVAL_S, ge=0, le=30),
    db: Session = Depends(get_db),
    notifier: RealtimeNotifier = Depends(get_realtime_notifier),
    session_factory: sessionmaker = Depends(get_session_factory),
    _auth: AuthContext = Depends(require_roles(*BACKOFFICE_ROLES)),
) -> SimulationResponse:
    if not settings.testing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    tracking_service.get_tracking(db, order_id)
    background_tasks.add_task(
        run_simulation,
        session_factory,
        notifier,
        order_id,
        source=LinearRouteSource(steps=steps),
        interval_s=interval_s,
    )
    return SimulationResponse(order_id=order_id, steps=steps)
