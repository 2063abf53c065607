import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

from app.domain.customers.db_models import Customer
from app.domain.payments import checkout
from app.main import app
from app.shared.circuit_breaker import CircuitBreakerOpenError


def _fake_stripe(calls: dict[str, list[dict]], *, checkout_error: Exception | None = None) -> SimpleNamespace:
    calls.setdefault("create_customer", [])
    calls.setdefault("create_checkout_session", [])

    def create_customer(**kwargs):
        calls["create_customer"].append(kwargs)
        return SimpleNamespace(id="cus_new")

    def create_checkout_session(**kwargs):
        calls["create_checkout_session"].append(kwargs)
        if checkout_error is not None:
            raise checkout_error
        return SimpleNamespace(id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

    return SimpleNamespace(create_customer=create_customer, create_checkout_session=create_checkout_session)


def _stripe_customer_id(async_session_maker, customer_id: str) -> str | None:
    async def _fetch() -> str | None:
        async with async_session_maker() as session:
            customer = await session.get(Customer, customer_id)
            return customer.stripe_customer_id

    return asyncio.run(_fetch())


def test_card_deposit_checkout_charges_outstanding_deposit(
    client, admin_headers, seed_order, async_session_maker, email_outbox
):
    customer_id, order_id = seed_order(deposit_pence=500, balance_pence=1000)
    calls: dict[str, list[dict]] = {}
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(
        "/v1/payments/checkout",
        json={"order_id": order_id, "flow": "card", "category": "deposit"},
        headers=admin_headers,
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["url"] == "https://checkout.stripe.test/cs_test_1"
    assert body["flow"] == "card_payment"
    assert body["category"] == "deposit"
    assert body["amount_pence"] == 500

    [request] = calls["create_checkout_session"]
    assert request["mode"] == "payment"
    assert request["amount_pence"] == 500
    assert request["payment_method_types"] == ["card"]
    assert request["customer"] == "cus_new"
    assert request["metadata"] == {
        "customer_id": customer_id,
        "category": "deposit",
        "flow": "card_payment",
        "order_id": order_id,
    }
    assert request["product_name"].startswith("Deposit")
    assert request["idempotency_key"]
    assert calls["create_customer"][0]["idempotency_key"]
    assert _stripe_customer_id(async_session_maker, customer_id) == "cus_new"

    assert email_outbox.subjects_for("client@example.com") == ["Secure deposit payment link for Brochure website"]
    assert "https://checkout.stripe.test/cs_test_1" in email_outbox.sent[0].body


def test_existing_stripe_customer_is_reused(client, admin_headers, seed_order):
    _, order_id = seed_order(stripe_customer_id="cus_existing")
    calls: dict[str, list[dict]] = {}
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(
        "/v1/payments/checkout",
        json={"order_id": order_id, "flow": "bank_payment", "category": "full"},
        headers=admin_headers,
    )

    assert response.status_code == 201, response.text
    assert calls["create_customer"] == []
    [request] = calls["create_checkout_session"]
    assert request["customer"] == "cus_existing"
    assert request["payment_method_types"] == ["bacs_debit"]
    assert request["amount_pence"] == 1500
    assert request["product_name"].endswith("(Direct Debit)")


def test_nothing_owed_never_calls_stripe(client, admin_headers, seed_order, seed_charge):
    _, order_id = seed_order(deposit_pence=500, balance_pence=1000)
    seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_deposit")
    calls: dict[str, list[dict]] = {}
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(
        "/v1/payments/checkout",
        json={"order_id": order_id, "flow": "card_payment", "category": "deposit"},
        headers=admin_headers,
    )

    assert response.status_code == 409
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["title"] == "Nothing Owed"
    assert calls["create_checkout_session"] == []
    assert calls["create_customer"] == []


def test_mandate_setup_uses_setup_mode(client, admin_headers, seed_order, email_outbox):
    customer_id, _ = seed_order()
    calls: dict[str, list[dict]] = {}
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(
        "/v1/payments/checkout",
        json={"customer_id": customer_id, "flow": "bacs_setup"},
        headers=admin_headers,
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["flow"] == "mandate_setup"
    assert body["category"] == "monthly"
    assert body["amount_pence"] == 0
    [request] = calls["create_checkout_session"]
    assert request["mode"] == "setup"
    assert "amount_pence" not in request
    assert request["metadata"] == {"customer_id": customer_id, "category": "monthly", "flow": "mandate_setup"}
    assert email_outbox.subjects_for("client@example.com") == ["Set up your Direct Debit"]


def test_unknown_flow_and_category_are_rejected(client, admin_headers, seed_order):
    _, order_id = seed_order()
    calls: dict[str, list[dict]] = {}
    app.state.stripe_client = _fake_stripe(calls)

    bad_flow = client.post(
        "/v1/payments/checkout", json={"order_id": order_id, "flow": "paypal"}, headers=admin_headers
    )
    bad_category = client.post(
        "/v1/payments/checkout",
        json={"order_id": order_id, "flow": "card", "category": "monthly"},
        headers=admin_headers,
    )

    assert bad_flow.status_code == 422
    assert bad_category.status_code == 422
    assert calls["create_checkout_session"] == []


def test_missing_order_returns_not_found(client, admin_headers):
    app.state.stripe_client = _fake_stripe({})

    response = client.post(
        "/v1/payments/checkout",
        json={"order_id": "00000000-0000-0000-0000-000000000000", "flow": "card"},
        headers=admin_headers,
    )

    assert response.status_code == 404
    assert response.json()["title"] == "Not Found"


def test_open_stripe_circuit_is_retryable(client, admin_headers, seed_order):
    _, order_id = seed_order(stripe_customer_id="cus_existing")
    app.state.stripe_client = _fake_stripe({}, checkout_error=CircuitBreakerOpenError("circuit_open:stripe"))

    response = client.post(
        "/v1/payments/checkout", json={"order_id": order_id, "flow": "card"}, headers=admin_headers
    )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"


def test_stripe_failure_maps_to_bad_gateway(client, admin_headers, seed_order):
    _, order_id = seed_order(stripe_customer_id="cus_existing")
    app.state.stripe_client = _fake_stripe({}, checkout_error=RuntimeError("stripe down"))

    response = client.post(
        "/v1/payments/checkout", json={"order_id": order_id, "flow": "card"}, headers=admin_headers
    )

    assert response.status_code == 502
    assert response.json()["title"] == "Payment Processor Error"


def test_checkout_requires_admin(client, seed_order):
    _, order_id = seed_order()

    response = client.post("/v1/payments/checkout", json={"order_id": order_id, "flow": "card"})

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Basic"


def test_checkout_key_is_reused_within_the_hour_only(seed_order, async_session_maker):
    _, order_id = seed_order(stripe_customer_id="cus_existing")
    calls: dict[str, list[dict]] = {}
    stripe_client = _fake_stripe(calls)

    async def _open(now: datetime) -> None:
        async with async_session_maker() as session:
            await checkout.create_checkout(
                session,
                stripe_client,
                None,
                flow="card_payment",
                order_id=order_id,
                category="deposit",
                now=now,
            )
            await session.commit()

    for moment in (
        datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc),
        datetime(2026, 3, 2, 9, 55, tzinfo=timezone.utc),
        datetime(2026, 3, 2, 10, 1, tzinfo=timezone.utc),
    ):
        asyncio.run(_open(moment))

    first, same_hour, next_hour = (call["idempotency_key"] for call in calls["create_checkout_session"])
    assert first == same_hour
    assert next_hour != same_hour
    assert calls["create_customer"] == []
