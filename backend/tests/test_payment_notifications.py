import argparse

import pytest

from app.domain.payments import notifications
from app.jobs.run import _parse_amount
from app.settings import settings


class FlakyAdapter:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send_email(self, recipient, subject, body, *, html=None):  # noqa: ANN001
        if recipient == "broken@example.com":
            raise RuntimeError("smtp down")
        self.sent.append(recipient)
        return True


def test_admin_notice_requires_opt_in():
    settings.admin_notification_email = "owner@example.com"
    settings.notify_admin_on_payment = False
    assert (
        notifications.admin_payment_notice(
            order_title="Shop", customer_name="Jo", category="deposit", amount_pence=500, order_id="ord-1"
        )
        is None
    )

    settings.notify_admin_on_payment = True
    notice = notifications.admin_payment_notice(
        order_title="Shop", customer_name="Jo", category="deposit", amount_pence=500, order_id="ord-1"
    )
    assert notice.recipient == "owner@example.com"
    assert notice.subject == "Payment received: Shop"
    assert "£5.00" in notice.body


def test_payment_request_escapes_html():
    message = notifications.payment_request(
        recipient="client@example.com",
        customer_name="<Jo>",
        order_title="Shop & Blog",
        category="balance",
        amount_pence=123456,
        url="https://checkout.stripe.test/cs_1",
    )

    assert message.subject == "Secure balance payment link for Shop & Blog"
    assert "£1,234.56" in message.body
    assert "&lt;Jo&gt;" in message.html
    assert "Shop &amp; Blog" in message.html


@pytest.mark.anyio
async def test_deliver_skips_failures_and_keeps_going():
    adapter = FlakyAdapter()
    batch = [
        notifications.refund_issued(
            recipient="broken@example.com", customer_name=None, order_title="Shop", amount_pence=100
        ),
        None,
        notifications.refund_issued(
            recipient="client@example.com", customer_name="Jo", order_title="Shop", amount_pence=100
        ),
    ]

    sent = await notifications.deliver(adapter, batch)

    assert sent == 1
    assert adapter.sent == ["client@example.com"]


@pytest.mark.anyio
async def test_deliver_without_adapter_sends_nothing():
    message = notifications.mandate_request(
        recipient="client@example.com", customer_name="Jo", url="https://checkout.stripe.test/cs_2"
    )

    assert await notifications.deliver(None, [message]) == 0


def test_job_amount_parsing():
    assert _parse_amount("45") == 4500
    assert _parse_amount("12.345") == 1235
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_amount("0")
    with pytest.raises(argparse.ArgumentTypeError):
        _parse_amount("lots")
