import json
import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.integrations.errors import IntegrationError
from app.integrations.payment_gateway import (
    CustomerInfo,
    GatewayLineItem,
    PaymentGatewayProtocol,
)
from app.models.order import Order, OrderStatus, PaymentStatus
from app.observability import log_event, metrics_store, observe_timing
from app.schemas.payment import CartItemIn, ShippingDetails
from app.services.errors import ValidationError, translate_integration_error
from app.services.materializer_service import (
    CART_METADATA_MAX_CHUNKS,
    DEFAULT_PAYMENT_METHOD,
    METADATA_VALUE_LIMIT,
    load_order_by_session,
    order_item_from_cart,
    shipping_address_from_details,
    split_cart_metadata,
)
from app.services.pricing import OrderTotals, compute_totals


@dataclass
class OpenedSession:
    session_id: str
    url: str | None
    placeholder: Order | None


def _absolute_image_url(image_url: str | None) -> str | None:
    if not image_url:
        return None
    if image_url.startswith(("http://", "https://")):
        return image_url
    return f"{settings.frontend_url}/{image_url.lstrip('/')}"


def _validate_checkout(cart_items: list[CartItemIn], email: str | None) -> None:
    if not cart_items:
        raise ValidationError("Cart is empty")
    if not email:
        raise ValidationError("Customer email is required")
    for item in cart_items:
        if not item.name or item.price <= 0 or item.quantity < 1:
            raise ValidationError("Invalid cart item: missing name, price, or quantity")


def _compact_json(value) -> str:
    return json.dumps(value, separators=(",", ":"))


def _cart_metadata(cart_items: list[CartItemIn]) -> dict[str, str]:
    """Serialize the cart, dropping image urls when the full form needs too many keys."""
    chunks = split_cart_metadata(
        _compact_json([item.model_dump(exclude_none=True) for item in cart_items])
    )
    if len(chunks) <= CART_METADATA_MAX_CHUNKS:
        return chunks
    chunks = split_cart_metadata(
        _compact_json(
            [item.model_dump(exclude_none=True, exclude={"image_url"}) for item in cart_items]
        )
    )
    if len(chunks) > CART_METADATA_MAX_CHUNKS:
        raise ValidationError("Cart has too many items for a single checkout")
    return chunks


def _session_metadata(
    cart_items: list[CartItemIn],
    shipping: dict,
    email: str,
    owner_id: str | None,
    totals: OrderTotals,
) -> dict[str, str]:
    shipping_json = _compact_json(shipping)
    if len(shipping_json) > METADATA_VALUE_LIMIT:
        raise ValidationError("Shipping details are too long")
    return {
        "customer_email": email,
        "shipping_details": shipping_json,
        "user_id": owner_id or "",
        **_cart_metadata(cart_items),
        **totals.as_metadata(),
    }


def insert_pending_placeholder(
    db: Session,
    *,
    session_id: str,
    owner_id: str | None,
    email: str,
    cart_items: list[CartItemIn],
    shipping: dict,
    totals: OrderTotals,
) -> Order:
    """Insert the pending order for a new session; an existing row wins silently."""
    existing = load_order_by_session(db, session_id)
    if existing is not None:
        return existing

    order = Order(
        session_id=session_id,
        user_id=owner_id,
        email=email,
        items=[order_item_from_cart(item) for item in cart_items],
        shipping_address=shipping_address_from_details(shipping, email),
        payment_method=DEFAULT_PAYMENT_METHOD,
        items_price=float(totals.subtotal),
        tax_price=float(totals.tax),
        shipping_price=float(totals.shipping),
        total_price=float(totals.total),
        is_paid=False,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
    )
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = load_order_by_session(db, session_id)
        if winner is None:
            raise
        return winner

    metrics_store.increment("pending_orders_created_total")
    return order


def open_session(
    db: Session,
    gateway: PaymentGatewayProtocol,
    *,
    cart_items: list[CartItemIn],
    shipping_details: ShippingDetails | None,
    customer_email: str | None,
    owner_id: str | None = None,
) -> OpenedSession:
    shipping = shipping_details.model_dump(exclude_none=True) if shipping_details else {}
    email = customer_email or shipping.get("email")
    _validate_checkout(cart_items, email)

    totals = compute_totals(cart_items)
    line_items = [
        GatewayLineItem(
            name=item.name,
            unit_amount=item.price,
            quantity=item.quantity,
            image_url=_absolute_image_url(item.image_url),
        )
        for item in cart_items
    ]
    customer = CustomerInfo(
        email=email, name=shipping.get("full_name"), phone=shipping.get("phone")
    )
    metadata = _session_metadata(cart_items, shipping, email, owner_id, totals)

    try:
        with observe_timing("payment_gateway_create_seconds"):
            handle = gateway.create_session(line_items, customer, metadata)
    except IntegrationError as err:
        metrics_store.increment("payment_gateway_errors_total")
        raise translate_integration_error(err) from err

    placeholder: Order | None = None
    try:
        placeholder = insert_pending_placeholder(
            db,
            session_id=handle.id,
            owner_id=owner_id,
            email=email,
            cart_items=cart_items,
            shipping=shipping,
            totals=totals,
        )
    except SQLAlchemyError:
        # The webhook or poll path materializes the order from session metadata
        db.rollback()
        log_event(
            "pending_order_insert_failed",
            level=logging.WARNING,
            session_id=handle.id,
            exc_info=True,
        )

    log_event(
        "checkout_session_opened",
        session_id=handle.id,
        order_id=str(placeholder.id) if placeholder else None,
    )
    return OpenedSession(session_id=handle.id, url=handle.url, placeholder=placeholder)
