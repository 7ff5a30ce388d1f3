# Import SQLAlchemy models so they register on Base.metadata
from app.models.order import Order, OrderStatus, PaymentStatus  # noqa: F401
from app.models.tracking import (  # noqa: F401
    OrderTracking,
    TrackingHistoryEntry,
    TrackingStatus,
    VehicleType,
)
from app.models.user import Cart, User  # noqa: F401
