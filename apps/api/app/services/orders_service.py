import uuid
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext
from app.clock import now_utc
from app.models.order import Order, OrderStatus
from app.observability import log_event, metrics_store
from app.schemas.order import OrderUpdateRequest
from app.services.errors import Conflict, NotFound, ValidationError
from app.services.state_machine import ensure_valid_order_transition


def _load(db: Session, order_id: uuid.UUID) -> Order | None:
    return db.scalar(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )


def list_orders(db: Session, auth: AuthContext, limit: int = 100) -> list[Order]:
    stmt = select(Order).order_by(Order.created_at.desc()).limit(limit)
    if not auth.is_backoffice:
        stmt = stmt.where(Order.user_id == auth.user_id)
    return list(db.scalars(stmt))


def get_order(db: Session, order_id: uuid.UUID, auth: AuthContext | None = None) -> Order:
    order = _load(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    # Someone else's order is reported as missing
    if auth is not None and not auth.is_backoffice and order.user_id != auth.user_id:
        raise NotFound("Order not found")
    return order


def _customer_changes(order: Order, payload: OrderUpdateRequest) -> dict[str, Any]:
    if payload.discount_amount is not None or payload.applied_promo_code is not None:
        raise ValidationError("Only back office can change pricing")
    if payload.status not in (None, OrderStatus.CANCELLED):
        raise ValidationError("Customers may only cancel an order")
    if payload.status == OrderStatus.CANCELLED and order.status != OrderStatus.PENDING:
        raise Conflict("Only unpaid pending orders can be cancelled")

    values: dict[str, Any] = {}
    if payload.status is not None:
        values["status"] = payload.status
    if payload.shipping_address is not None:
        values["shipping_address"] = payload.shipping_address
    return values


def _backoffice_changes(order: Order, payload: OrderUpdateRequest) -> dict[str, Any]:
    values = payload.model_dump(exclude_none=True, exclude={"status"})
    if payload.status is not None:
        ensure_valid_order_transition(order.status, payload.status)
        values["status"] = payload.status
        if payload.status == OrderStatus.DELIVERED and not order.is_delivered:
            values["is_delivered"] = True
            values["delivered_at"] = now_utc()
    return values


def update_order(
    db: Session,
    order_id: uuid.UUID,
    payload: OrderUpdateRequest,
    auth: AuthContext,
) -> Order:
    order = get_order(db, order_id, auth)
    if auth.is_backoffice:
        values = _backoffice_changes(order, payload)
    else:
        values = _customer_changes(order, payload)
    if not values:
        return order

    values["updated_at"] = now_utc()
    # Guarded on the status we validated against; a concurrent payment flip wins
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == order.status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise Conflict("Order changed concurrently, retry the update")
    db.commit()

    order = _load(db, order_id)
    metrics_store.increment("orders_updated_total")
    log_event(
        f"order_updated status={order.status.value}",
        order_id=str(order.id),
        session_id=order.session_id,
    )
    return order
