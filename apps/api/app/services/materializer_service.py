"""Turn checkout sessions into paid orders exactly once.

Three callers reach ``materialize_session`` independently: the gateway
webhook, the client polling session details after redirect, and the manual
"create order from payment" fallback (plus the reconciliation sweep). They may
run concurrently for the same session. No lock is taken; the outcome is
decided by the store:

* ``orders.session_id`` is unique, so of two racing inserts one fails with
  ``IntegrityError`` and switches to the read-then-update path;
* the pending -> paid flip is a conditional ``UPDATE ... WHERE is_paid = false``
  and only the caller whose update matched a row clears the owner's cart, in
  the same transaction.

A user editing their cart at the instant of payment can keep an item added
right after the clear. That race is accepted rather than serialized.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.clock import now_utc
from app.integrations.errors import IntegrationError
from app.integrations.payment_gateway import CheckoutSession, PaymentGatewayProtocol
from app.models.order import Order, OrderStatus, PaymentStatus
from app.models.user import Cart, User
from app.observability import log_event, metrics_store, observe_timing
from app.schemas.payment import CartItemIn
from app.services.errors import (
    Conflict,
    DataIntegrityError,
    NotFound,
    PaymentRejected,
    ValidationError,
    translate_integration_error,
)
from app.services.pricing import compute_totals

DEFAULT_COUNTRY = "India"
DEFAULT_PAYMENT_METHOD = "Credit Card"

CART_METADATA_KEY = "cart_items"
# Stripe caps each metadata value at 500 characters and each session at 50 keys.
METADATA_VALUE_LIMIT = 500
CART_METADATA_MAX_CHUNKS = 40


@dataclass
class MaterializeResult:
    order: Order
    created: bool = False
    transitioned: bool = False


@dataclass
class SessionOrderDraft:
    email: str
    user_id: str | None
    items: list[dict] = field(default_factory=list)
    shipping_address: dict = field(default_factory=dict)
    items_price: float = 0.0
    tax_price: float = 0.0
    shipping_price: float = 0.0
    total_price: float = 0.0


def order_item_from_cart(item: CartItemIn) -> dict:
    return {
        "product_id": item.item_id,
        "quantity": item.quantity,
        "unit_price": item.price,
        "name": item.name,
        "image_url": item.image_url,
    }


def shipping_address_from_details(details: dict, email: str | None) -> dict:
    full_name = details.get("full_name")
    if not full_name and (details.get("first_name") or details.get("last_name")):
        full_name = f"{details.get('first_name') or ''} {details.get('last_name') or ''}".strip()
    return {
        "full_name": full_name,
        "email": email,
        "phone": details.get("phone"),
        "address": details.get("address") or details.get("address1") or "",
        "city": details.get("city") or "",
        "state": details.get("state"),
        "postal_code": details.get("postal_code") or details.get("zip_code") or "",
        "country": details.get("country") or DEFAULT_COUNTRY,
    }


def load_order_by_session(db: Session, session_id: str) -> Order | None:
    # populate_existing: conditional updates bypass the identity map
    return db.scalar(
        select(Order)
        .where(Order.session_id == session_id)
        .execution_options(populate_existing=True)
    )


def fetch_session(gateway: PaymentGatewayProtocol, session_id: str) -> CheckoutSession:
    try:
        with observe_timing("payment_gateway_retrieve_seconds"):
            return gateway.retrieve_session(session_id)
    except IntegrationError as err:
        metrics_store.increment("payment_gateway_errors_total")
        raise translate_integration_error(err) from err


def clear_cart(db: Session, user_id: str) -> None:
    db.execute(update(Cart).where(Cart.user_id == user_id).values(items=[]))
    metrics_store.increment("cart_cleared_total")


def split_cart_metadata(encoded: str) -> dict[str, str]:
    """Spread a serialized cart over ``cart_items``, ``cart_items_1``, ``cart_items_2``..."""
    chunks = [
        encoded[start : start + METADATA_VALUE_LIMIT]
        for start in range(0, len(encoded), METADATA_VALUE_LIMIT)
    ] or [""]
    return {
        CART_METADATA_KEY if index == 0 else f"{CART_METADATA_KEY}_{index}": chunk
        for index, chunk in enumerate(chunks)
    }


def join_cart_metadata(metadata: dict[str, str]) -> str | None:
    head = metadata.get(CART_METADATA_KEY)
    if not head:
        return head
    parts = [head]
    index = 1
    while f"{CART_METADATA_KEY}_{index}" in metadata:
        parts.append(metadata[f"{CART_METADATA_KEY}_{index}"])
        index += 1
    return "".join(parts)


def resolve_owner(db: Session, user_id: str | None, email: str | None) -> str | None:
    if user_id:
        return user_id
    if not email:
        return None
    return db.scalar(select(User.id).where(func.lower(User.email) == email.strip().lower()))


def _metadata_amount(metadata: dict[str, str], key: str) -> Decimal | None:
    raw = metadata.get(key)
    if raw in (None, ""):
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def parse_session_metadata(session: CheckoutSession) -> SessionOrderDraft:
    """Rebuild the order body that ``open_session`` stashed on the session."""
    metadata = session.metadata
    raw_cart = join_cart_metadata(metadata)
    email = metadata.get("customer_email") or session.customer_email
    if not raw_cart or not email:
        log_event(
            "session_metadata_missing",
            level=logging.ERROR,
            session_id=session.id,
        )
        raise DataIntegrityError(f"Session {session.id} is missing cart items or email")

    try:
        cart_payload = json.loads(raw_cart)
        shipping_details = json.loads(metadata.get("shipping_details") or "{}") or {}
        cart = [CartItemIn.model_validate(entry) for entry in cart_payload]
    except (json.JSONDecodeError, TypeError, PydanticValidationError) as err:
        log_event(
            "session_metadata_unparsable",
            level=logging.ERROR,
            session_id=session.id,
        )
        raise DataIntegrityError(f"Session {session.id} carries unparsable metadata") from err

    if not cart or not isinstance(shipping_details, dict):
        raise DataIntegrityError(f"Session {session.id} carries an empty cart")

    totals = compute_totals(cart)
    subtotal = _metadata_amount(metadata, "subtotal")
    tax = _metadata_amount(metadata, "tax")
    shipping = _metadata_amount(metadata, "delivery_charge")
    total = _metadata_amount(metadata, "total_amount")
    # Amounts written at session-open time are what the customer was charged
    if None in (subtotal, tax, shipping, total):
        subtotal, tax, shipping, total = totals.subtotal, totals.tax, totals.shipping, totals.total

    return SessionOrderDraft(
        email=email,
        user_id=metadata.get("user_id") or None,
        items=[order_item_from_cart(item) for item in cart],
        shipping_address=shipping_address_from_details(shipping_details, email),
        items_price=float(subtotal),
        tax_price=float(tax),
        shipping_price=float(shipping),
        total_price=float(total),
    )


def _flip_pending_to_paid(db: Session, session: CheckoutSession) -> bool:
    now = now_utc()
    result = db.execute(
        update(Order)
        .where(Order.session_id == session.id, Order.is_paid.is_(False))
        .values(
            is_paid=True,
            paid_at=now,
            status=OrderStatus.COMPLETED,
            payment_status=PaymentStatus.PAID,
            payment_intent_id=func.coalesce(Order.payment_intent_id, session.payment_intent_id),
            user_id=func.coalesce(Order.user_id, session.metadata.get("user_id") or None),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _complete_pending(db: Session, session: CheckoutSession) -> MaterializeResult:
    try:
        transitioned = _flip_pending_to_paid(db, session)
        order = load_order_by_session(db, session.id)
        if transitioned and order is not None and order.user_id:
            clear_cart(db, order.user_id)
        db.commit()
    except IntegrityError as err:
        db.rollback()
        raise Conflict(f"Payment reference for session {session.id} is already bound") from err

    if order is None:
        raise NotFound(f"Order for session {session.id} disappeared")

    if transitioned:
        metrics_store.increment("orders_paid_total")
        log_event("pending_order_marked_paid", order_id=str(order.id), session_id=session.id)
    else:
        metrics_store.increment("materialize_noop_total")
    return MaterializeResult(order=order, transitioned=transitioned)


def _create_paid_order(db: Session, session: CheckoutSession) -> MaterializeResult:
    draft = parse_session_metadata(session)
    user_id = resolve_owner(db, draft.user_id, session.customer_email or draft.email)
    now = now_utc()

    order = Order(
        session_id=session.id,
        payment_intent_id=session.payment_intent_id,
        user_id=user_id,
        email=session.customer_email or draft.email,
        items=draft.items,
        shipping_address=draft.shipping_address,
        payment_method=DEFAULT_PAYMENT_METHOD,
        items_price=draft.items_price,
        tax_price=draft.tax_price,
        shipping_price=draft.shipping_price,
        total_price=draft.total_price,
        is_paid=True,
        paid_at=now,
        status=OrderStatus.COMPLETED,
        payment_status=PaymentStatus.PAID,
    )
    db.add(order)
    try:
        db.flush()
        if user_id:
            clear_cart(db, user_id)
        db.commit()
    except IntegrityError:
        db.rollback()
        metrics_store.increment("materialize_conflict_total")
        log_event("materialize_lost_insert_race", session_id=session.id)
        winner = load_order_by_session(db, session.id)
        if winner is None:
            raise Conflict(f"Payment reference for session {session.id} is already bound")
        if winner.is_paid:
            return MaterializeResult(order=winner)
        return _complete_pending(db, session)

    metrics_store.increment("orders_paid_total")
    log_event("order_materialized", order_id=str(order.id), session_id=session.id)
    return MaterializeResult(order=order, created=True, transitioned=True)


def materialize_session(
    db: Session,
    gateway: PaymentGatewayProtocol,
    session_id: str | None = None,
    *,
    session: CheckoutSession | None = None,
) -> MaterializeResult:
    """Return the one paid order for a session, creating or completing it if needed.

    ``session`` may be passed pre-fetched (webhook payload); otherwise it is
    retrieved from the gateway. Raises ``PaymentRejected`` when the session is
    not paid and no paid order exists yet.
    """
    if session is None:
        if not session_id:
            raise ValidationError("Session ID is required")
        session = fetch_session(gateway, session_id)

    existing = load_order_by_session(db, session.id)
    if existing is not None and existing.is_paid:
        metrics_store.increment("materialize_noop_total")
        return MaterializeResult(order=existing)

    if not session.is_paid:
        raise PaymentRejected(f"Payment not completed for session {session.id}")

    if existing is not None:
        return _complete_pending(db, session)
    return _create_paid_order(db, session)
