from types import SimpleNamespace

import pytest

from app.infra.stripe_client import StripeClient
from app.infra.stripe_resilience import stripe_circuit


def _fake_sdk(captured: dict):
    def _record(name):
        def _create(**kwargs):
            captured[name] = kwargs
            return {"id": f"{name}_1"}

        return _create

    return SimpleNamespace(
        api_key=None,
        Refund=SimpleNamespace(create=_record("re")),
        PaymentIntent=SimpleNamespace(create=_record("pi")),
        checkout=SimpleNamespace(Session=SimpleNamespace(create=_record("cs"))),
    )


@pytest.fixture(autouse=True)
def _closed_circuit():
    stripe_circuit.reset()
    yield
    stripe_circuit.reset()


@pytest.mark.anyio
async def test_refund_by_charge_id_sends_charge_reference():
    captured: dict = {}
    client = StripeClient(secret_key="sk_test", webhook_secret="whsec_test", stripe_sdk=_fake_sdk(captured))

    result = await client.create_refund(amount_pence=250, charge="ch_1", idempotency_key="refund-1")

    assert result == {"id": "re_1"}
    assert captured["re"]["charge"] == "ch_1"
    assert "payment_intent" not in captured["re"]
    assert captured["re"]["amount"] == 250
    assert captured["re"]["idempotency_key"] == "refund-1"


@pytest.mark.anyio
async def test_refund_requires_a_reference():
    client = StripeClient(secret_key="sk_test", webhook_secret="whsec_test", stripe_sdk=_fake_sdk({}))
    with pytest.raises(ValueError):
        await client.create_refund(amount_pence=250, idempotency_key="refund-1")


@pytest.mark.anyio
async def test_payment_checkout_builds_single_gbp_line_item():
    captured: dict = {}
    client = StripeClient(secret_key="sk_test", webhook_secret="whsec_test", stripe_sdk=_fake_sdk(captured))

    await client.create_checkout_session(
        mode="payment",
        success_url="https://example.test/ok",
        cancel_url="https://example.test/cancel",
        payment_method_types=["card"],
        amount_pence=500,
        product_name="Deposit — Website",
        metadata={"order_id": "ord-1"},
        idempotency_key="checkout-1",
    )

    payload = captured["cs"]
    assert payload["line_items"][0]["price_data"]["unit_amount"] == 500
    assert payload["line_items"][0]["price_data"]["currency"] == "gbp"
    assert payload["payment_intent_data"] == {"metadata": {"order_id": "ord-1"}}


@pytest.mark.anyio
async def test_off_session_debit_confirms_against_mandate():
    captured: dict = {}
    client = StripeClient(secret_key="sk_test", webhook_secret="whsec_test", stripe_sdk=_fake_sdk(captured))

    await client.create_off_session_payment(
        customer="cus_1",
        payment_method="pm_1",
        mandate="mandate_1",
        amount_pence=4500,
        description="Hosting",
        idempotency_key="recurring-1",
    )

    payload = captured["pi"]
    assert payload["mandate"] == "mandate_1"
    assert payload["payment_method_types"] == ["bacs_debit"]
    assert payload["off_session"] is True
    assert payload["confirm"] is True


@pytest.mark.anyio
async def test_missing_secret_key_fails_before_calling_stripe(monkeypatch):
    captured: dict = {}
    monkeypatch.setattr("app.infra.stripe_client.settings.stripe_secret_key", None)
    client = StripeClient(secret_key=None, webhook_secret=None, stripe_sdk=_fake_sdk(captured))

    with pytest.raises(ValueError, match="secret key"):
        await client.create_refund(amount_pence=100, payment_intent="pi_1", idempotency_key="refund-1")
    assert captured == {}
