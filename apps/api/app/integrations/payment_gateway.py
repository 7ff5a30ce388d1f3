import time
import uuid
from typing import Any, Callable, Protocol, TypeVar

import stripe
from pydantic import BaseModel, Field

from app.config import checkout_cancel_url, checkout_success_url, settings
from app.integrations.errors import (
    IntegrationBadGatewayError,
    IntegrationError,
    IntegrationNotFoundError,
    IntegrationSignatureError,
    IntegrationTimeoutError,
    IntegrationUnavailableError,
)

_SERVICE = "stripe"
_ALLOWED_SHIPPING_COUNTRIES = ["IN", "US"]

T = TypeVar("T")


class GatewayLineItem(BaseModel):
    name: str
    unit_amount: float = Field(ge=0)
    quantity: int = Field(ge=1)
    image_url: str | None = None


class CustomerInfo(BaseModel):
    email: str
    name: str | None = None
    phone: str | None = None


class SessionHandle(BaseModel):
    id: str
    url: str | None = None


class CheckoutSession(BaseModel):
    id: str
    url: str | None = None
    status: str | None = None
    payment_status: str = "unpaid"
    customer_email: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    payment_intent_id: str | None = None
    amount_total: float | None = None
    currency: str | None = None
    shipping_details: dict | None = None
    line_items: list[GatewayLineItem] = Field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def is_expired(self) -> bool:
        return self.status == "expired"


class GatewayEvent(BaseModel):
    id: str
    type: str
    session: CheckoutSession | None = None


class PaymentGatewayProtocol(Protocol):
    def create_session(
        self,
        line_items: list[GatewayLineItem],
        customer: CustomerInfo,
        metadata: dict[str, str],
    ) -> SessionHandle: ...

    def retrieve_session(self, session_id: str) -> CheckoutSession: ...

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent: ...


def _as_dict(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise IntegrationBadGatewayError(_SERVICE, f"Unexpected object type {type(value).__name__}")


def _minor_to_major(amount: int | None) -> float | None:
    if amount is None:
        return None
    return amount / 100


def checkout_session_from_payload(raw: Any) -> CheckoutSession:
    """Flatten a Stripe checkout session (expanded or not) into our model."""
    data = _as_dict(raw)
    if not data.get("id"):
        raise IntegrationBadGatewayError(_SERVICE, "Checkout session payload has no id")

    payment_intent = data.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent_id = payment_intent.get("id")
    else:
        payment_intent_id = payment_intent

    metadata = {str(key): str(value) for key, value in (data.get("metadata") or {}).items()}
    customer_details = data.get("customer_details") or {}
    customer_email = (
        customer_details.get("email")
        or data.get("customer_email")
        or metadata.get("customer_email")
    )
    shipping = (
        data.get("shipping_details")
        or data.get("shipping")
        or (data.get("collected_information") or {}).get("shipping_details")
    )

    line_items: list[GatewayLineItem] = []
    for item in (data.get("line_items") or {}).get("data") or []:
        price = item.get("price") or {}
        product = price.get("product") if isinstance(price.get("product"), dict) else {}
        images = product.get("images") or []
        line_items.append(
            GatewayLineItem(
                name=item.get("description") or product.get("name") or "",
                unit_amount=_minor_to_major(price.get("unit_amount")) or 0.0,
                quantity=item.get("quantity") or 1,
                image_url=images[0] if images else None,
            )
        )

    return CheckoutSession(
        id=data["id"],
        url=data.get("url"),
        status=data.get("status"),
        payment_status=data.get("payment_status") or "unpaid",
        customer_email=customer_email,
        metadata=metadata,
        payment_intent_id=payment_intent_id,
        amount_total=_minor_to_major(data.get("amount_total")),
        currency=data.get("currency"),
        shipping_details=shipping,
        line_items=line_items,
    )


class StripePaymentGateway:
    """Checkout sessions and webhook verification backed by the Stripe SDK.

    The API key and webhook secret are constructor arguments; nothing here
    touches ``stripe.api_key`` or other module-level state.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        currency: str,
        success_url: str,
        cancel_url: str,
        timeout_s: float,
        max_retries: int,
        backoff_s: float,
        client: Any | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._sleep = sleep
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise IntegrationUnavailableError(_SERVICE, "Stripe API key is not configured")
            self._client = stripe.StripeClient(
                self._api_key,
                http_client=stripe.HTTPXClient(timeout=self._timeout_s, allow_sync_methods=True),
                max_network_retries=0,
            )
        return self._client

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return fn()
            except stripe.InvalidRequestError as err:
                if err.code == "resource_missing":
                    raise IntegrationNotFoundError(_SERVICE, f"{operation}: {err.user_message}")
                raise IntegrationBadGatewayError(_SERVICE, f"{operation}: {err.user_message}")
            except stripe.APIConnectionError as err:
                integration_error: IntegrationError = IntegrationTimeoutError(
                    _SERVICE, f"{operation}: {err.user_message or 'connection failed'}"
                )
            except (stripe.RateLimitError, stripe.APIError) as err:
                integration_error = IntegrationUnavailableError(
                    _SERVICE, f"{operation}: {err.user_message or 'unavailable'}"
                )
            except stripe.StripeError as err:
                raise IntegrationBadGatewayError(_SERVICE, f"{operation}: {err.user_message}")

            if attempt >= self.max_retries:
                raise integration_error

            self._sleep(self.backoff_s * (2**attempt))

        raise RuntimeError("stripe retry loop exhausted unexpectedly")

    def create_session(
        self,
        line_items: list[GatewayLineItem],
        customer: CustomerInfo,
        metadata: dict[str, str],
    ) -> SessionHandle:
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": item.name,
                            "images": [item.image_url] if item.image_url else [],
                        },
                        "unit_amount": round(item.unit_amount * 100),
                    },
                    "quantity": item.quantity,
                }
                for item in line_items
            ],
            "customer_email": customer.email,
            "billing_address_collection": "required",
            "shipping_address_collection": {"allowed_countries": _ALLOWED_SHIPPING_COUNTRIES},
            "phone_number_collection": {"enabled": True},
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "metadata": metadata,
        }
        # One key per logical create so retried attempts cannot open two sessions
        options = {"idempotency_key": f"checkout-{uuid.uuid4()}"}
        session = self._call(
            "create_session",
            lambda: self.client.checkout.sessions.create(params=params, options=options),
        )
        data = _as_dict(session)
        return SessionHandle(id=data["id"], url=data.get("url"))

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        session = self._call(
            "retrieve_session",
            lambda: self.client.checkout.sessions.retrieve(
                session_id,
                params={"expand": ["line_items", "payment_intent"]},
            ),
        )
        return checkout_session_from_payload(session)

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if not signature:
            raise IntegrationSignatureError(_SERVICE, "Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as err:
            raise IntegrationSignatureError(_SERVICE, str(err)) from err
        except ValueError as err:
            raise IntegrationSignatureError(_SERVICE, "Webhook payload is not valid JSON") from err

        data = _as_dict(event)
        event_type = data.get("type") or ""
        session = None
        if event_type.startswith("checkout.session."):
            session = checkout_session_from_payload((data.get("data") or {}).get("object"))
        return GatewayEvent(id=data.get("id") or "", type=event_type, session=session)


def get_payment_gateway() -> PaymentGatewayProtocol:
    return StripePaymentGateway(
        settings.stripe_api_key,
        settings.stripe_webhook_secret,
        currency=settings.payment_currency,
        success_url=checkout_success_url(),
        cancel_url=checkout_cancel_url(),
        timeout_s=settings.payment_gateway_timeout_s,
        max_retries=settings.payment_gateway_max_retries,
        backoff_s=settings.payment_gateway_backoff_s,
    )
