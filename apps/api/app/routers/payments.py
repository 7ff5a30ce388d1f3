from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.auth.dependencies import (
    BACKOFFICE_ROLES,
    AuthContext,
    get_optional_auth_context,
    require_roles,
)
from app.db.session import get_db
from app.integrations.payment_gateway import PaymentGatewayProtocol, get_payment_gateway
from app.observability import log_event
from app.schemas.order import OrderResponse
from app.schemas.payment import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    OrderSummary,
    ReconcileRequest,
    ReconcileResponse,
    SessionDetailsResponse,
    SessionIdRequest,
    SessionLineItem,
    WebhookAck,
)
from app.services.checkout_service import open_session
from app.services.errors import UpstreamTimeout
from app.services.payments_service import (
    create_order_from_payment,
    get_session_details,
    handle_webhook,
    reconcile_pending_orders,
)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post(
    "/checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Open a hosted checkout session",
)
def create_checkout_session_endpoint(
    payload: CheckoutSessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
    auth: AuthContext | None = Depends(get_optional_auth_context),
) -> CheckoutSessionResponse:
    opened = open_session(
        db,
        gateway,
        cart_items=payload.cart_items,
        shipping_details=payload.shipping_details,
        customer_email=payload.customer_email,
        owner_id=auth.user_id if auth else None,
    )
    return CheckoutSessionResponse(
        session_id=opened.session_id,
        url=opened.url,
        order_id=opened.placeholder.id if opened.placeholder else None,
    )


@router.post("/webhook", response_model=WebhookAck, summary="Payment gateway webhook")
async def webhook_endpoint(
    request: Request,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookAck:
    """
    Signature verification needs the exact bytes the gateway signed, so the raw
    body is read before any parsing. Transient failures answer 503 and the
    gateway redelivers the event.
    """
    payload = await request.body()
    try:
        outcome = await run_in_threadpool(handle_webhook, db, gateway, payload, stripe_signature)
    except OperationalError as err:
        db.rollback()
        log_event("webhook_store_unavailable", exc_info=True)
        raise UpstreamTimeout("Order store temporarily unavailable") from err

    return WebhookAck(
        event_type=outcome.event_type,
        outcome=outcome.outcome,
        order_id=outcome.order.id if outcome.order else None,
    )


@router.post(
    "/session-details",
    response_model=SessionDetailsResponse,
    summary="Poll a checkout session and materialize its order when paid",
)
def session_details_endpoint(
    payload: SessionIdRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
) -> SessionDetailsResponse:
    details = get_session_details(db, gateway, payload.session_id)
    session = details.session
    return SessionDetailsResponse(
        session_id=session.id,
        payment_intent_id=session.payment_intent_id,
        payment_status=session.payment_status,
        customer_email=session.customer_email,
        shipping_details=session.shipping_details,
        cart_items=[
            SessionLineItem(
                name=item.name,
                price=item.unit_amount,
                quantity=item.quantity,
                image_url=item.image_url,
            )
            for item in session.line_items
        ],
        amount_total=session.amount_total,
        currency=session.currency,
        order=OrderSummary.model_validate(details.order) if details.order else None,
    )


@router.post(
    "/create-order-from-payment",
    response_model=OrderResponse,
    summary="Manual fallback that materializes the order for a paid session",
)
def create_order_from_payment_endpoint(
    payload: SessionIdRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
    auth: AuthContext | None = Depends(get_optional_auth_context),
) -> OrderResponse:
    result = create_order_from_payment(db, gateway, payload.session_id, auth)
    return OrderResponse.model_validate(result.order)


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Sweep stale pending orders against the gateway",
)
def reconcile_endpoint(
    payload: ReconcileRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayProtocol = Depends(get_payment_gateway),
    _auth: AuthContext = Depends(require_roles(*BACKOFFICE_ROLES)),
) -> ReconcileResponse:
    report = reconcile_pending_orders(
        db,
        gateway,
        older_than_s=payload.older_than_s,
        limit=payload.limit,
    )
    return ReconcileResponse(
        examined=report.examined,
        materialized=report.materialized,
        failed=report.failed,
        still_pending=report.still_pending,
        errors=report.errors,
    )
