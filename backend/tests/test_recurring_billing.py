import asyncio
import json
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from app.domain.customers.db_models import Customer
from app.domain.payments.db_models import Payment
from app.main import app


@pytest.fixture()
def seed_mandated_customer(async_session_maker):
    def _seed(name: str, email: str, stripe_customer_id: str, *, active: bool = True) -> str:
        async def _create() -> str:
            async with async_session_maker() as session:
                customer = Customer(
                    name=name,
                    email=email,
                    stripe_customer_id=stripe_customer_id,
                    stripe_mandate_id=f"mandate_{stripe_customer_id}",
                    stripe_payment_method_id=f"pm_{stripe_customer_id}",
                    direct_debit_active=active,
                )
                session.add(customer)
                await session.commit()
                return customer.customer_id

        return asyncio.run(_create())

    return _seed


def _fake_stripe(calls: list[dict], failing: set[str]) -> SimpleNamespace:
    def create_off_session_payment(**kwargs):
        calls.append(kwargs)
        if kwargs["customer"] in failing:
            raise RuntimeError("mandate revoked")
        return {"id": f"pi_{kwargs['customer']}", "status": "processing"}

    return SimpleNamespace(create_off_session_payment=create_off_session_payment)


def _monthly_rows(async_session_maker) -> dict[str, tuple[int, str, str | None]]:
    async def _fetch():
        async with async_session_maker() as session:
            rows = (await session.scalars(select(Payment).where(Payment.category == "monthly"))).all()
            return {row.customer_id: (row.amount_pence, row.status, row.external_ref) for row in rows}

    return asyncio.run(_fetch())


def test_one_failure_does_not_stop_the_batch(
    client, admin_headers, seed_mandated_customer, async_session_maker, email_outbox
):
    good = seed_mandated_customer("Ada", "ada@example.com", "cus_good")
    bad = seed_mandated_customer("Bob", "bob@example.com", "cus_bad")
    seed_mandated_customer("Cy", "cy@example.com", "cus_inactive", active=False)
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls, failing={"cus_bad"})

    response = client.post(
        "/v1/payments/bill-recurring",
        json={"amount": "45.00", "description": "Hosting and maintenance"},
        headers=admin_headers,
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert (body["attempted"], body["succeeded"], body["failed"]) == (2, 1, 1)
    outcomes = {result["customer_id"]: result["outcome"] for result in body["results"]}
    assert outcomes == {good: "succeeded", bad: "failed"}

    assert {call["customer"] for call in calls} == {"cus_good", "cus_bad"}
    good_call = next(call for call in calls if call["customer"] == "cus_good")
    assert good_call["mandate"] == "mandate_cus_good"
    assert good_call["amount_pence"] == 4500
    assert good_call["metadata"]["category"] == "monthly"

    rows = _monthly_rows(async_session_maker)
    assert rows[good] == (4500, "pending", "pi_cus_good")
    assert rows[bad] == (4500, "failed", None)

    assert email_outbox.subjects_for("ada@example.com") == ["Direct Debit payment: £45.00"]
    assert email_outbox.subjects_for("bob@example.com") == ["Payment failed: please update your details"]
    assert email_outbox.subjects_for("cy@example.com") == []


def test_rerun_in_same_month_reuses_idempotency_keys(client, admin_headers, seed_mandated_customer):
    seed_mandated_customer("Ada", "ada@example.com", "cus_good")
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls, failing=set())
    payload = {"amount": "45.00", "description": "Hosting and maintenance"}

    client.post("/v1/payments/bill-recurring", json=payload, headers=admin_headers)
    client.post("/v1/payments/bill-recurring", json=payload, headers=admin_headers)

    assert len(calls) == 2
    assert calls[0]["idempotency_key"] == calls[1]["idempotency_key"]


def test_webhook_settles_pending_direct_debit(client, admin_headers, seed_mandated_customer, async_session_maker):
    customer_id = seed_mandated_customer("Ada", "ada@example.com", "cus_good")
    app.state.stripe_client = _fake_stripe([], failing=set())
    client.post(
        "/v1/payments/bill-recurring",
        json={"amount": "45.00", "description": "Hosting"},
        headers=admin_headers,
    )

    event = {
        "id": "evt_dd_paid",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_cus_good",
                "amount_received": 4500,
                "status": "succeeded",
                "metadata": {"customer_id": customer_id, "category": "monthly"},
            }
        },
    }
    app.state.stripe_client = SimpleNamespace(verify_webhook=lambda payload, signature: event)
    response = client.post(
        "/v1/payments/stripe/webhook",
        content=json.dumps(event).encode(),
        headers={"Stripe-Signature": "t=1,v1=test"},
    )

    assert response.json() == {"received": True, "processed": True}
    assert _monthly_rows(async_session_maker)[customer_id] == (4500, "paid", "pi_cus_good")


def test_blank_description_is_rejected(client, admin_headers):
    app.state.stripe_client = _fake_stripe([], failing=set())

    response = client.post(
        "/v1/payments/bill-recurring",
        json={"amount": "45.00", "description": "   "},
        headers=admin_headers,
    )

    assert response.status_code == 422


def test_no_mandated_customers_is_an_empty_run(client, admin_headers):
    app.state.stripe_client = _fake_stripe([], failing=set())

    response = client.post(
        "/v1/payments/bill-recurring",
        json={"amount": "45.00", "description": "Hosting"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json() == {"attempted": 0, "succeeded": 0, "failed": 0, "results": []}


class DebitDeclined(Exception):
    """Shaped like a Stripe error raised while confirming an off-session intent."""

    def __init__(self, payment_intent_id: str) -> None:
        super().__init__("Your bank declined the debit")
        self.error = SimpleNamespace(payment_intent={"id": payment_intent_id, "status": "requires_payment_method"})


def test_declined_debit_webhook_folds_onto_biller_row(
    client, admin_headers, seed_mandated_customer, async_session_maker, email_outbox
):
    customer_id = seed_mandated_customer("Bob", "bob@example.com", "cus_declined")

    def create_off_session_payment(**kwargs):
        raise DebitDeclined("pi_declined")

    app.state.stripe_client = SimpleNamespace(create_off_session_payment=create_off_session_payment)
    response = client.post(
        "/v1/payments/bill-recurring",
        json={"amount": "45.00", "description": "Hosting"},
        headers=admin_headers,
    )
    assert response.json()["failed"] == 1
    assert _monthly_rows(async_session_maker)[customer_id] == (4500, "failed", "pi_declined")

    event = {
        "id": "evt_dd_declined",
        "type": "payment_intent.payment_failed",
        "data": {
            "object": {
                "id": "pi_declined",
                "amount": 4500,
                "status": "requires_payment_method",
                "metadata": {"customer_id": customer_id, "category": "monthly"},
            }
        },
    }
    app.state.stripe_client = SimpleNamespace(verify_webhook=lambda payload, signature: event)
    webhook = client.post(
        "/v1/payments/stripe/webhook",
        content=json.dumps(event).encode(),
        headers={"Stripe-Signature": "t=1,v1=test"},
    )

    assert webhook.json() == {"received": True, "processed": False}

    async def _count_rows() -> int:
        async with async_session_maker() as session:
            rows = await session.scalars(select(Payment).where(Payment.customer_id == customer_id))
            return len(rows.all())

    assert asyncio.run(_count_rows()) == 1
    assert email_outbox.subjects_for("bob@example.com") == ["Payment failed: please update your details"]
