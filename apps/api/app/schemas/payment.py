import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.order import OrderStatus, PaymentStatus


class CartItemIn(BaseModel):
    item_id: str | None = Field(default=None, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    price: float = Field(gt=0)
    quantity: int = Field(ge=1)
    image_url: str | None = Field(default=None, max_length=1024)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()


class ShippingDetails(BaseModel):
    full_name: str | None = Field(default=None, max_length=255)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    address: str | None = Field(default=None, max_length=512)
    city: str | None = Field(default=None, max_length=128)
    state: str | None = Field(default=None, max_length=128)
    postal_code: str | None = Field(default=None, max_length=32)
    country: str | None = Field(default=None, max_length=64)


class CheckoutSessionRequest(BaseModel):
    cart_items: list[CartItemIn] = Field(default_factory=list)
    shipping_details: ShippingDetails | None = None
    customer_email: str | None = Field(default=None, max_length=255)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str | None
    order_id: uuid.UUID | None = None


class SessionIdRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    status: OrderStatus
    payment_status: PaymentStatus
    is_paid: bool
    total_price: float
    created_at: datetime


class SessionLineItem(BaseModel):
    name: str
    price: float
    quantity: int
    image_url: str | None = None


class SessionDetailsResponse(BaseModel):
    session_id: str
    payment_intent_id: str | None
    payment_status: str
    customer_email: str | None
    shipping_details: dict | None
    cart_items: list[SessionLineItem]
    amount_total: float | None
    currency: str | None
    order: OrderSummary | None


class WebhookAck(BaseModel):
    received: bool = True
    event_type: str
    order_id: uuid.UUID | None = None
    outcome: str


class ReconcileRequest(BaseModel):
    older_than_s: int | None = Field(default=None, ge=0)
    limit: int | None = Field(default=None, ge=1, le=500)


class ReconcileResponse(BaseModel):
    examined: int
    materialized: int
    failed: int
    still_pending: int
    errors: int
