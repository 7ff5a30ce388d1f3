import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.order import OrderStatus, PaymentStatus


class OrderItem(BaseModel):
    product_id: str | None = None
    quantity: int
    unit_price: float
    name: str
    image_url: str | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    session_id: str | None
    payment_intent_id: str | None
    user_id: str | None
    email: str | None
    items: list[OrderItem]
    shipping_address: dict
    payment_method: str
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    discount_amount: float
    applied_promo_code: str | None
    is_paid: bool
    paid_at: datetime | None
    is_delivered: bool
    delivered_at: datetime | None
    status: OrderStatus
    payment_status: PaymentStatus
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]


class OrderUpdateRequest(BaseModel):
    status: OrderStatus | None = None
    shipping_address: dict | None = None
    applied_promo_code: str | None = Field(default=None, max_length=64)
    discount_amount: float | None = Field(default=None, ge=0)
