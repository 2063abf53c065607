import asyncio
import json
from types import SimpleNamespace

from sqlalchemy import select

from app.domain.orders.db_models import Order
from app.domain.payments.db_models import Payment
from app.main import app


def _fake_stripe(calls: list[dict], *, error: Exception | None = None) -> SimpleNamespace:
    def create_refund(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return {"id": f"re_{len(calls)}"}

    return SimpleNamespace(create_refund=create_refund)


def _ledger(async_session_maker, order_id: str) -> tuple[int, list[tuple[int, str, str]]]:
    async def _fetch():
        async with async_session_maker() as session:
            order = await session.get(Order, order_id)
            rows = (
                await session.scalars(
                    select(Payment).where(Payment.order_id == order_id).order_by(Payment.amount_pence.desc())
                )
            ).all()
            return order.total_paid_pence, [(row.amount_pence, row.category, row.status) for row in rows]

    return asyncio.run(_fetch())


def test_partial_refund_reduces_total_paid(client, admin_headers, seed_order, seed_charge, async_session_maker, email_outbox):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_dep")
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "2.00"}, headers=admin_headers)

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["amount_pence"] == 200
    assert body["stripe_refund_id"] == "re_1"
    assert body["order_total_paid_pence"] == 300
    assert body["refund_payment_id"]

    [request] = calls
    assert request["payment_intent"] == "pi_dep"
    assert request["amount_pence"] == 200
    assert request["idempotency_key"]

    total, rows = _ledger(async_session_maker, order_id)
    assert total == 300
    assert rows == [(500, "deposit", "paid"), (-200, "refund", "refunded")]
    assert email_outbox.subjects_for("client@example.com") == ["Refund issued: Brochure website"]


def test_refunding_the_remainder_flips_the_charge(client, admin_headers, seed_order, seed_charge, async_session_maker):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_dep")
    app.state.stripe_client = _fake_stripe([])

    first = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "2.00"}, headers=admin_headers)
    second = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "3.00"}, headers=admin_headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["order_total_paid_pence"] == 0
    total, rows = _ledger(async_session_maker, order_id)
    assert total == 0
    assert rows[0] == (500, "deposit", "refunded")


def test_webhook_after_admin_refund_does_not_double_count(
    client, admin_headers, seed_order, seed_charge, async_session_maker
):
    customer_id, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_dep")
    app.state.stripe_client = _fake_stripe([])
    client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "2.00"}, headers=admin_headers)

    event = {
        "id": "evt_charge_refunded",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_dep",
                "payment_intent": "pi_dep",
                "amount_refunded": 200,
                "refunds": {"data": [{"id": "re_1"}]},
            }
        },
    }
    app.state.stripe_client = SimpleNamespace(verify_webhook=lambda payload, signature: event)
    response = client.post(
        "/v1/payments/stripe/webhook",
        content=json.dumps(event).encode(),
        headers={"Stripe-Signature": "t=1,v1=test"},
    )

    assert response.json() == {"received": True, "processed": False}
    total, rows = _ledger(async_session_maker, order_id)
    assert total == 300
    assert len(rows) == 2


def test_charge_reference_is_sent_as_charge(client, admin_headers, seed_order, seed_charge):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=1500, external_ref="ch_legacy")
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "15.00"}, headers=admin_headers)

    assert response.status_code == 200
    assert calls[0]["charge"] == "ch_legacy"
    assert "payment_intent" not in calls[0]


def test_over_refund_is_rejected_before_stripe(client, admin_headers, seed_order, seed_charge, async_session_maker):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_dep")
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "6.00"}, headers=admin_headers)

    assert response.status_code == 422
    assert calls == []
    assert _ledger(async_session_maker, order_id)[0] == 500


def test_manual_payment_cannot_be_refunded(client, admin_headers, seed_order, seed_charge):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, external_ref=None, method="bank_transfer")
    calls: list[dict] = []
    app.state.stripe_client = _fake_stripe(calls)

    response = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "1.00"}, headers=admin_headers)

    assert response.status_code == 409
    assert response.json()["title"] == "No External Reference"
    assert calls == []


def test_stripe_failure_leaves_ledger_untouched(client, admin_headers, seed_order, seed_charge, async_session_maker):
    _, order_id = seed_order()
    payment_id = seed_charge(order_id, amount_pence=500, category="deposit", external_ref="pi_dep")
    app.state.stripe_client = _fake_stripe([], error=RuntimeError("card_declined"))

    response = client.post(f"/v1/payments/{payment_id}/refund", json={"amount": "1.00"}, headers=admin_headers)

    assert response.status_code == 502
    total, rows = _ledger(async_session_maker, order_id)
    assert total == 500
    assert rows == [(500, "deposit", "paid")]


def test_unknown_payment_returns_not_found(client, admin_headers):
    app.state.stripe_client = _fake_stripe([])

    response = client.post("/v1/payments/missing/refund", json={"amount": "1.00"}, headers=admin_headers)

    assert response.status_code == 404
