import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext
from app.clock import now_utc
from app.config import settings
from app.integrations.errors import IntegrationError
from app.integrations.payment_gateway import CheckoutSession, PaymentGatewayProtocol
from app.models.order import Order, OrderStatus, PaymentStatus
from app.observability import log_event, metrics_store
from app.services.errors import (
    DataIntegrityError,
    EngineError,
    PaymentRejected,
    translate_integration_error,
)
from app.services.materializer_service import (
    MaterializeResult,
    fetch_session,
    load_order_by_session,
    materialize_session,
)

COMPLETED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
FAILED_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
}


@dataclass
class WebhookOutcome:
    event_type: str
    outcome: str
    order: Order | None = None


@dataclass
class SessionDetails:
    session: CheckoutSession
    order: Order | None


@dataclass
class ReconcileReport:
    examined: int = 0
    materialized: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0


def mark_session_failed(db: Session, session_id: str) -> bool:
    """Close out a still-pending placeholder whose session can no longer be paid."""
    result = db.execute(
        update(Order)
        .where(Order.session_id == session_id, Order.is_paid.is_(False))
        .values(
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
            updated_at=now_utc(),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def handle_webhook(
    db: Session,
    gateway: PaymentGatewayProtocol,
    payload: bytes,
    signature: str | None,
) -> WebhookOutcome:
    """Process one gateway event.

    Malformed sessions and unpaid completions are acknowledged so the gateway
    stops redelivering; transient failures propagate and the router answers
    with a retryable status.
    """
    try:
        event = gateway.construct_event(payload, signature)
    except IntegrationError as err:
        metrics_store.increment("webhook_rejected_total")
        raise translate_integration_error(err) from err

    metrics_store.increment("webhook_received_total")
    session = event.session

    if event.type in COMPLETED_EVENTS and session is not None:
        try:
            result = materialize_session(db, gateway, session=session)
        except DataIntegrityError:
            metrics_store.increment("webhook_malformed_total")
            log_event("webhook_session_malformed", level=logging.ERROR, session_id=session.id)
            return WebhookOutcome(event_type=event.type, outcome="malformed")
        except PaymentRejected:
            log_event("webhook_session_unpaid", session_id=session.id)
            return WebhookOutcome(event_type=event.type, outcome="unpaid")
        return WebhookOutcome(
            event_type=event.type,
            outcome="created" if result.created else "materialized",
            order=result.order,
        )

    if event.type in FAILED_EVENTS and session is not None:
        closed = mark_session_failed(db, session.id)
        log_event("webhook_session_failed", session_id=session.id)
        return WebhookOutcome(
            event_type=event.type,
            outcome="failed" if closed else "ignored",
            order=load_order_by_session(db, session.id),
        )

    log_event(f"webhook_unhandled_event type={event.type}")
    return WebhookOutcome(event_type=event.type, outcome="ignored")


def get_session_details(
    db: Session,
    gateway: PaymentGatewayProtocol,
    session_id: str,
) -> SessionDetails:
    """Poll path used after the checkout redirect."""
    session = fetch_session(gateway, session_id)
    order = load_order_by_session(db, session.id)
    if session.is_paid and (order is None or not order.is_paid):
        log_event("session_poll_materializing", session_id=session.id)
        order = materialize_session(db, gateway, session=session).order
    return SessionDetails(session=session, order=order)


def create_order_from_payment(
    db: Session,
    gateway: PaymentGatewayProtocol,
    session_id: str,
    auth: AuthContext | None = None,
) -> MaterializeResult:
    """Manual fallback: materialize and claim an ownerless order for the caller."""
    result = materialize_session(db, gateway, session_id)
    order = result.order
    if auth is not None and order.user_id is None:
        db.execute(
            update(Order)
            .where(Order.id == order.id, Order.user_id.is_(None))
            .values(user_id=auth.user_id, updated_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)
        log_event("order_claimed_by_caller", order_id=str(order.id), session_id=session_id)
    return result


def reconcile_pending_orders(
    db: Session,
    gateway: PaymentGatewayProtocol,
    *,
    older_than_s: int | None = None,
    limit: int | None = None,
) -> ReconcileReport:
    """Sweep stale placeholders whose webhook and poll never arrived."""
    age = settings.reconcile_pending_after_s if older_than_s is None else older_than_s
    batch = limit or settings.reconcile_batch_size
    cutoff = now_utc() - timedelta(seconds=age)

    session_ids = list(
        db.scalars(
            select(Order.session_id)
            .where(
                Order.payment_status == PaymentStatus.PENDING,
                Order.is_paid.is_(False),
                Order.session_id.is_not(None),
                Order.created_at <= cutoff,
            )
            .order_by(Order.created_at.asc())
            .limit(batch)
        )
    )

    report = ReconcileReport()
    for session_id in session_ids:
        report.examined += 1
        try:
            session = fetch_session(gateway, session_id)
            if session.is_paid:
                materialize_session(db, gateway, session=session)
                report.materialized += 1
            elif session.is_expired:
                if mark_session_failed(db, session_id):
                    report.failed += 1
            else:
                report.still_pending += 1
        except EngineError as err:
            db.rollback()
            report.errors += 1
            log_event(
                f"reconcile_session_error code={err.code}",
                level=logging.WARNING,
                session_id=session_id,
            )

    metrics_store.increment("reconcile_runs_total")
    log_event(
        f"reconcile_completed examined={report.examined} materialized={report.materialized}"
    )
    return report
