from app.schemas.order import OrderListResponse, OrderResponse, OrderUpdateRequest
from app.schemas.payment import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    SessionDetailsResponse,
    WebhookAck,
)
from app.schemas.tracking import (
    NearbyTrackingListResponse,
    TrackingCreateRequest,
    TrackingHistoryResponse,
    TrackingResponse,
)

__all__ = [
    "OrderResponse",
    "OrderListResponse",
    "OrderUpdateRequest",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "SessionDetailsResponse",
    "WebhookAck",
    "TrackingCreateRequest",
    "TrackingResponse",
    "TrackingHistoryResponse",
    "NearbyTrackingListResponse",
]
