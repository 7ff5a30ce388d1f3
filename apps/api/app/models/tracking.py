import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.clock import now_utc
from app.db.base import Base


class TrackingStatus(str, enum.Enum):
    PLACED = "placed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class VehicleType(str, enum.Enum):
    BIKE = "bike"
    CAR = "car"
    BICYCLE = "bicycle"
    SCOOTER = "scooter"


_tracking_status_type = Enum(
    TrackingStatus,
    name="tracking_status",
    values_callable=lambda e: [m.value for m in e],
)


class OrderTracking(Base):
    __tablename__ = "order_trackings"
    __table_args__ = (
        Index("ix_order_trackings_current_location", "current_lat", "current_lng"),
        Index("ix_order_trackings_customer_active", "customer_id", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rider_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    rider_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    status: Mapped[TrackingStatus] = mapped_column(
        _tracking_status_type,
        nullable=False,
        default=TrackingStatus.PLACED,
    )

    current_lat: Mapped[float] = mapped_column(Float, nullable=False)
    current_lng: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_lat: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_lng: Mapped[float] = mapped_column(Float, nullable=False)
    delivery_address: Mapped[str] = mapped_column(String(512), nullable=False)
    restaurant_lat: Mapped[float] = mapped_column(Float, nullable=False)
    restaurant_lng: Mapped[float] = mapped_column(Float, nullable=False)
    restaurant_address: Mapped[str] = mapped_column(String(512), nullable=False)

    estimated_delivery_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    actual_delivery_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_utc, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=now_utc,
        server_default=func.now(),
        onupdate=now_utc,
    )

    history: Mapped[list["TrackingHistoryEntry"]] = relationship(
        back_populates="tracking",
        order_by=lambda: [TrackingHistoryEntry.timestamp, TrackingHistoryEntry.id],
        lazy="selectin",
    )


class TrackingHistoryEntry(Base):
    __tablename__ = "tracking_history_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tracking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("order_trackings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[TrackingStatus] = mapped_column(
        _tracking_status_type,
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    tracking: Mapped[OrderTracking] = relationship(back_populates="history")
