import json
import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.auth.jwt import issue_jwt
from app.config import settings
from app.db.base import Base
from app.db.session import build_session_factory, get_db, get_session_factory
from app.db.session import engine as app_engine
from app.integrations.errors import (
    IntegrationNotFoundError,
    IntegrationSignatureError,
    IntegrationTimeoutError,
)
from app.integrations.payment_gateway import (
    CheckoutSession,
    GatewayEvent,
    SessionHandle,
    get_payment_gateway,
)
from app.integrations.realtime import get_realtime_notifier
from app.main import app
from app.models.user import Cart, User
from app.observability import metrics_store
from app.schemas.payment import CartItemIn
from app.services.pricing import compute_totals

FAKE_SIGNATURE = "t=1,v1=fake"
SHIPPING_DETAILS = {
    "full_name": "Asha Rao",
    "email": "buyer@example.com",
    "phone": "+919800000000",
    "address": "12 MG Road",
    "city": "Delhi",
    "postal_code": "110001",
}


class FakeGateway:
    """In-memory stand-in for the hosted checkout provider."""

    def __init__(self) -> None:
        self.sessions: dict[str, CheckoutSession] = {}
        self.created: list[dict] = []
        self.retrieve_calls = 0
        self.fail_retrieve_with: Exception | None = None
        self._lock = threading.Lock()
        self._counter = 0

    def create_session(self, line_items, customer, metadata) -> SessionHandle:
        with self._lock:
            self._counter += 1
            session_id = f"cs_test_{self._counter}"
        self.created.append(
            {"line_items": line_items, "customer": customer, "metadata": dict(metadata)}
        )
        self.sessions[session_id] = CheckoutSession(
            id=session_id,
            url=f"https://checkout.test/{session_id}",
            status="open",
            payment_status="unpaid",
            customer_email=customer.email,
            metadata=dict(metadata),
            amount_total=float(metadata.get("total_amount", 0) or 0),
            currency="inr",
        )
        return SessionHandle(id=session_id, url=f"https://checkout.test/{session_id}")

    def complete(self, session_id: str, payment_intent_id: str | None = None) -> CheckoutSession:
        session = self.sessions[session_id].model_copy(
            update={
                "status": "complete",
                "payment_status": "paid",
                "payment_intent_id": payment_intent_id or f"pi_{session_id}",
            }
        )
        self.sessions[session_id] = session
        return session

    def expire(self, session_id: str) -> CheckoutSession:
        session = self.sessions[session_id].model_copy(update={"status": "expired"})
        self.sessions[session_id] = session
        return session

    def add_session(self, session: CheckoutSession) -> CheckoutSession:
        self.sessions[session.id] = session
        return session

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        self.retrieve_calls += 1
        if self.fail_retrieve_with is not None:
            raise self.fail_retrieve_with
        if session_id not in self.sessions:
            raise IntegrationNotFoundError("stripe", f"No such checkout session: {session_id}")
        return self.sessions[session_id]

    def construct_event(self, payload: bytes, signature: str | None) -> GatewayEvent:
        if signature != FAKE_SIGNATURE:
            raise IntegrationSignatureError("stripe", "No signatures found matching the expected")
        body = json.loads(payload)
        session = None
        raw_session = (body.get("data") or {}).get("object")
        if raw_session is not None:
            session = CheckoutSession.model_validate(raw_session)
        return GatewayEvent(id=body.get("id", "evt_test"), type=body["type"], session=session)


class RecordingNotifier:
    def __init__(self) -> None:
        self.published: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    def publish(self, channel: str, event: str, payload: dict) -> None:
        with self._lock:
            self.published.append((channel, event, payload))

    def events_for(self, channel: str) -> list[str]:
        return [event for name, event, _ in self.published if name == channel]


class ExplodingNotifier:
    def publish(self, channel: str, event: str, payload: dict) -> None:
        raise RuntimeError("socket layer down")


def webhook_body(event_type: str, session: CheckoutSession | None) -> bytes:
    payload = {"id": "evt_test", "type": event_type}
    if session is not None:
        payload["data"] = {"object": session.model_dump(mode="json")}
    return json.dumps(payload).encode("utf-8")


@pytest.fixture(scope="session", autouse=True)
def setup_test_schema():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield
    Base.metadata.drop_all(bind=app_engine)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=app_engine)
    Base.metadata.create_all(bind=app_engine)
    yield


@pytest.fixture(autouse=True)
def reset_metrics_store():
    metrics_store.reset()
    yield


@pytest.fixture
def session_factory() -> sessionmaker:
    return build_session_factory(app_engine)


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def exploding_notifier() -> ExplodingNotifier:
    return ExplodingNotifier()


@pytest.fixture
def signed_webhook():
    """Build (body, headers) for a webhook the fake gateway accepts."""

    def _build(event_type: str, session: CheckoutSession | None = None):
        return webhook_body(event_type, session), {"Stripe-Signature": FAKE_SIGNATURE}

    return _build


@pytest.fixture
def make_session(gateway):
    """Register a checkout session carrying the metadata checkout would have written."""

    def _make(
        session_id: str = "cs_test_manual",
        *,
        paid: bool = True,
        user_id: str = "",
        email: str = "buyer@example.com",
        cart: list[dict] | None = None,
        payment_intent_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSession:
        cart = cart or [{"item_id": "p-1", "name": "Paneer Tikka", "price": 250.0, "quantity": 2}]
        totals = compute_totals([CartItemIn.model_validate(item) for item in cart])
        session_metadata = {
            "customer_email": email,
            "shipping_details": json.dumps(SHIPPING_DETAILS),
            "cart_items": json.dumps(cart),
            "user_id": user_id,
            **totals.as_metadata(),
            **(metadata or {}),
        }
        return gateway.add_session(
            CheckoutSession(
                id=session_id,
                status="complete" if paid else "open",
                payment_status="paid" if paid else "unpaid",
                customer_email=email,
                metadata=session_metadata,
                payment_intent_id=payment_intent_id or (f"pi_{session_id}" if paid else None),
                amount_total=float(totals.total),
                currency="inr",
            )
        )

    return _make


@pytest.fixture
def timeout_error() -> IntegrationTimeoutError:
    return IntegrationTimeoutError("stripe", "retrieve_session: connection failed")


@pytest.fixture
def client(session_factory, gateway, notifier):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_realtime_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session", autouse=True)
def enable_testing_mode():
    original = settings.testing
    settings.testing = True
    yield
    settings.testing = original


@pytest.fixture
def customer(db_session):
    """A registered customer whose cart still holds what they are about to pay for."""
    user = User(id="user-1", email="buyer@example.com", name="Asha Rao")
    db_session.add(user)
    db_session.add(
        Cart(user_id=user.id, items=[{"product_id": "p-1", "name": "Paneer Tikka", "quantity": 2}])
    )
    db_session.commit()
    return user


@pytest.fixture
def auth_headers():
    def _headers(role: str, sub: str) -> dict[str, str]:
        token = issue_jwt(sub, role, settings.jwt_secret)
        return {"Authorization": f"Bearer {token}"}

    return _headers
