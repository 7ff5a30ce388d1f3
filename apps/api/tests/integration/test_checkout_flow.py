from app.integrations.errors import IntegrationUnavailableError

CHECKOUT_PAYLOAD = {
    "cart_items": [
        {"item_id": "p-1", "name": "Paneer Tikka", "price": 250.0, "quantity": 2},
        {"item_id": "p-2", "name": "Garlic Naan", "price": 60.0, "quantity": 1},
    ],
    "shipping_details": {
        "full_name": "Asha Rao",
        "email": "buyer@example.com",
        "address": "12 MG Road",
        "city": "Delhi",
    },
}


def _open_checkout(client, headers=None):
    response = client.post(
        "/api/v1/payments/checkout-session", json=CHECKOUT_PAYLOAD, headers=headers or {}
    )
    assert response.status_code == 200
    return response.json()


def test_checkout_then_webhook_then_poll_settle_one_order(
    client, gateway, signed_webhook, headers
):
    opened = _open_checkout(client, headers["customer"])
    assert opened["url"].startswith("https://checkout.test/")

    pending = client.get(f"/api/v1/orders/{opened['order_id']}", headers=headers["customer"])
    assert pending.json()["status"] == "pending"
    assert pending.json()["total_price"] == 588.0

    session = gateway.complete(opened["session_id"])
    body, webhook_headers = signed_webhook("checkout.session.completed", session)
    hook = client.post("/api/v1/payments/webhook", content=body, headers=webhook_headers)

    assert hook.status_code == 200
    assert hook.json()["outcome"] == "materialized"
    assert hook.json()["order_id"] == opened["order_id"]

    poll = client.post(
        "/api/v1/payments/session-details", json={"session_id": opened["session_id"]}
    )
    manual = client.post(
        "/api/v1/payments/create-order-from-payment", json={"session_id": opened["session_id"]}
    )

    assert poll.status_code == 200
    assert poll.json()["order"]["id"] == opened["order_id"]
    assert poll.json()["order"]["is_paid"] is True
    assert manual.json()["id"] == opened["order_id"]

    mine = client.get("/api/v1/orders", headers=headers["customer"]).json()["items"]
    assert [order["id"] for order in mine] == [opened["order_id"]]
    assert mine[0]["user_id"] == "user-1"
    assert mine[0]["payment_status"] == "paid"


def test_guest_checkout_poll_without_webhook(client, gateway):
    opened = _open_checkout(client)
    gateway.complete(opened["session_id"])

    poll = client.post(
        "/api/v1/payments/session-details", json={"session_id": opened["session_id"]}
    )

    assert poll.status_code == 200
    assert poll.json()["payment_status"] == "paid"
    assert poll.json()["order"]["status"] == "completed"


def test_empty_cart_is_rejected(client):
    response = client.post("/api/v1/payments/checkout-session", json={"cart_items": []})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_webhook_with_bad_signature_is_rejected(client, signed_webhook):
    body, _ = signed_webhook("checkout.session.completed")

    response = client.post(
        "/api/v1/payments/webhook", content=body, headers={"Stripe-Signature": "t=1,v1=forged"}
    )

    assert response.status_code == 400


def test_unpaid_manual_fallback_is_rejected(client, make_session):
    make_session("cs_unpaid", paid=False)

    response = client.post(
        "/api/v1/payments/create-order-from-payment", json={"session_id": "cs_unpaid"}
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "PAYMENT_NOT_COMPLETED"


def test_gateway_outage_is_retryable_with_retry_after(client, gateway):
    gateway.fail_retrieve_with = IntegrationUnavailableError("stripe", "retrieve_session: 503")

    response = client.post("/api/v1/payments/session-details", json={"session_id": "cs_any"})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "5"


def test_unknown_session_is_not_found(client):
    response = client.post("/api/v1/payments/session-details", json={"session_id": "cs_nope"})

    assert response.status_code == 404


def test_reconcile_requires_backoffice(client, headers):
    denied = client.post("/api/v1/payments/reconcile", json={}, headers=headers["customer"])
    allowed = client.post(
        "/api/v1/payments/reconcile", json={"older_than_s": 0}, headers=headers["ops"]
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["errors"] == 0
