from datetime import datetime

from app.clock import as_utc, now_utc
from app.models.order import OrderStatus
from app.models.tracking import TrackingStatus
from app.services.errors import Conflict

FORWARD_PATH: tuple[TrackingStatus, ...] = (
    TrackingStatus.PLACED,
    TrackingStatus.CONFIRMED,
    TrackingStatus.PREPARING,
    TrackingStatus.READY_FOR_PICKUP,
    TrackingStatus.OUT_FOR_DELIVERY,
    TrackingStatus.DELIVERED,
)

TERMINAL_STATUSES: frozenset[TrackingStatus] = frozenset(
    {TrackingStatus.DELIVERED, TrackingStatus.CANCELLED}
)

PICKUP_ELIGIBLE_STATUSES: frozenset[TrackingStatus] = frozenset(
    {TrackingStatus.READY_FOR_PICKUP, TrackingStatus.OUT_FOR_DELIVERY}
)

# Non-terminal states may move to any status, revisits included; terminal ones are absorbing.
TRACKING_STATE_TRANSITIONS: dict[TrackingStatus, frozenset[TrackingStatus]] = {
    status: frozenset() if status in TERMINAL_STATUSES else frozenset(TrackingStatus)
    for status in TrackingStatus
}

PROGRESS_BY_STATUS: dict[TrackingStatus, int] = {
    TrackingStatus.PLACED: 10,
    TrackingStatus.CONFIRMED: 25,
    TrackingStatus.PREPARING: 40,
    TrackingStatus.READY_FOR_PICKUP: 55,
    TrackingStatus.OUT_FOR_DELIVERY: 75,
    TrackingStatus.DELIVERED: 100,
    TrackingStatus.CANCELLED: 0,
}

STATUS_MESSAGES: dict[TrackingStatus, str] = {
    TrackingStatus.PLACED: "Order has been placed successfully",
    TrackingStatus.CONFIRMED: "Order confirmed by the restaurant",
    TrackingStatus.PREPARING: "Your food is being prepared",
    TrackingStatus.READY_FOR_PICKUP: "Order is ready for pickup",
    TrackingStatus.OUT_FOR_DELIVERY: "Order is out for delivery",
    TrackingStatus.DELIVERED: "Order delivered successfully!",
    TrackingStatus.CANCELLED: "Order has been cancelled",
}


def is_terminal(status: TrackingStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure_valid_transition(current: TrackingStatus, next_status: TrackingStatus) -> None:
    allowed = TRACKING_STATE_TRANSITIONS.get(current, frozenset())
    if next_status not in allowed:
        raise Conflict(f"Invalid state transition: {current.value} -> {next_status.value}")


def progress_percentage(status: TrackingStatus) -> int:
    return PROGRESS_BY_STATUS.get(status, 0)


def estimated_time_remaining_s(
    status: TrackingStatus,
    estimated_delivery_time: datetime,
    now: datetime | None = None,
) -> int:
    if status in TERMINAL_STATUSES:
        return 0
    remaining = as_utc(estimated_delivery_time) - (now or now_utc())
    return max(0, int(remaining.total_seconds()))


def default_message(status: TrackingStatus) -> str:
    return STATUS_MESSAGES.get(status, "")


ORDER_STATE_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
        }
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def ensure_valid_order_transition(current: OrderStatus, next_status: OrderStatus) -> None:
    if current == next_status:
        return
    if next_status not in ORDER_STATE_TRANSITIONS.get(current, frozenset()):
        raise Conflict(f"Invalid order transition: {current.value} -> {next_status.value}")
