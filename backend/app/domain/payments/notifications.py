from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Iterable

from app.domain.payments.money import format_gbp
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

TEMPLATE_PAYMENT_REQUEST = "payment_request"
TEMPLATE_MANDATE_REQUEST = "mandate_request"
TEMPLATE_RECEIPT = "payment_receipt"
TEMPLATE_ADMIN_PAYMENT = "admin_payment_received"
TEMPLATE_PAYMENT_FAILED = "payment_failed"
TEMPLATE_REFUND = "refund_issued"
TEMPLATE_RECURRING_SUCCESS = "recurring_success"
TEMPLATE_RECURRING_FAILED = "recurring_failed"

_CATEGORY_LABELS = {
    "deposit": "deposit",
    "balance": "balance",
    "full": "full",
    "monthly": "monthly",
}


@dataclass(frozen=True)
class Notification:
    template: str
    recipient: str
    subject: str
    body: str
    html: str | None = None


def _greeting(name: str | None) -> str:
    return f"Hi {name or 'Customer'},"


def _sender_name() -> str:
    return settings.email_from_name or settings.app_name


def _signature() -> str:
    return f"Kind regards,\n{_sender_name()}"


def _wrap_html(heading: str, paragraphs: list[str], link: tuple[str, str] | None = None) -> str:
    parts = [
        "<html><body style=\"font-family:Helvetica,Arial,sans-serif;background:#f4f6f8;padding:32px;\">",
        "<table width=\"100%\" style=\"max-width:600px;margin:auto;background:#fff;border-radius:12px;\">",
        f"<tr><td style=\"background:#0d1117;color:#58a6ff;text-align:center;padding:20px;\"><h2>{html.escape(heading)}</h2></td></tr>",
        "<tr><td style=\"padding:28px;color:#333;line-height:1.6;\">",
    ]
    parts.extend(f"<p>{html.escape(paragraph)}</p>" for paragraph in paragraphs)
    if link is not None:
        label, url = link
        parts.append(
            "<p style=\"text-align:center;margin:28px 0;\">"
            f"<a href=\"{html.escape(url, quote=True)}\" style=\"background:#007bff;color:#fff;"
            f"padding:12px 24px;border-radius:8px;text-decoration:none;\">{html.escape(label)}</a></p>"
        )
    parts.append(f"<p>Kind regards,<br><strong>{html.escape(_sender_name())}</strong></p>")
    parts.append("</td></tr></table></body></html>")
    return "".join(parts)


def payment_request(
    *, recipient: str, customer_name: str | None, order_title: str, category: str, amount_pence: int, url: str
) -> Notification:
    label = _CATEGORY_LABELS.get(category, category)
    amount = format_gbp(amount_pence)
    lines = [
        f"You can complete your {label} payment of {amount} for {order_title} using the secure link below.",
        "Once payment is received your order balance updates automatically and you will get a receipt.",
    ]
    body = "\n\n".join([_greeting(customer_name), *lines, url, _signature()])
    return Notification(
        template=TEMPLATE_PAYMENT_REQUEST,
        recipient=recipient,
        subject=f"Secure {label} payment link for {order_title}",
        body=body,
        html=_wrap_html(f"Secure {label} payment link", [_greeting(customer_name), *lines], ("Pay now", url)),
    )


def mandate_request(*, recipient: str, customer_name: str | None, url: str) -> Notification:
    lines = [
        "Please set up your Direct Debit for monthly payments using the secure link below.",
        "Your bank details are collected by Stripe and never stored by us.",
    ]
    return Notification(
        template=TEMPLATE_MANDATE_REQUEST,
        recipient=recipient,
        subject="Set up your Direct Debit",
        body="\n\n".join([_greeting(customer_name), *lines, url, _signature()]),
        html=_wrap_html("Set up your Direct Debit", [_greeting(customer_name), *lines], ("Set up Direct Debit", url)),
    )


def receipt(
    *,
    recipient: str,
    customer_name: str | None,
    order_title: str,
    category: str,
    amount_pence: int,
    balance_due_pence: int,
) -> Notification:
    lines = [
        f"Thank you. We have received your {_CATEGORY_LABELS.get(category, category)} payment "
        f"of {format_gbp(amount_pence)} for {order_title}.",
        f"Remaining balance: {format_gbp(balance_due_pence)}.",
    ]
    return Notification(
        template=TEMPLATE_RECEIPT,
        recipient=recipient,
        subject=f"Payment receipt: {order_title}",
        body="\n\n".join([_greeting(customer_name), *lines, _signature()]),
        html=_wrap_html("Payment receipt", [_greeting(customer_name), *lines]),
    )


def admin_payment_notice(
    *, order_title: str, customer_name: str | None, category: str, amount_pence: int, order_id: str
) -> Notification | None:
    recipient = settings.admin_notification_email
    if not settings.notify_admin_on_payment or not recipient:
        return None
    body = (
        f"{customer_name or 'A customer'} paid {format_gbp(amount_pence)} ({category}) "
        f"for {order_title}.\nOrder: {order_id}"
    )
    return Notification(
        template=TEMPLATE_ADMIN_PAYMENT,
        recipient=recipient,
        subject=f"Payment received: {order_title}",
        body=body,
    )


def payment_failed(
    *, recipient: str, customer_name: str | None, description: str, amount_pence: int
) -> Notification:
    lines = [
        f"Your payment of {format_gbp(amount_pence)} for {description} did not go through.",
        "Please check your payment details or reply to this email and we will help.",
    ]
    return Notification(
        template=TEMPLATE_PAYMENT_FAILED,
        recipient=recipient,
        subject="Payment failed: please update your details",
        body="\n\n".join([_greeting(customer_name), *lines, _signature()]),
        html=_wrap_html("Payment failed", [_greeting(customer_name), *lines]),
    )


def refund_issued(
    *, recipient: str, customer_name: str | None, order_title: str, amount_pence: int
) -> Notification:
    lines = [
        f"We have issued a refund of {format_gbp(amount_pence)} for {order_title}.",
        "It usually reaches your account within 5 to 10 working days.",
    ]
    return Notification(
        template=TEMPLATE_REFUND,
        recipient=recipient,
        subject=f"Refund issued: {order_title}",
        body="\n\n".join([_greeting(customer_name), *lines, _signature()]),
        html=_wrap_html("Refund issued", [_greeting(customer_name), *lines]),
    )


def recurring_success(
    *, recipient: str, customer_name: str | None, description: str, amount_pence: int
) -> Notification:
    lines = [
        f"Your Direct Debit payment of {format_gbp(amount_pence)} for {description} has been submitted.",
        "Bacs payments take a few working days to clear.",
    ]
    return Notification(
        template=TEMPLATE_RECURRING_SUCCESS,
        recipient=recipient,
        subject=f"Direct Debit payment: {format_gbp(amount_pence)}",
        body="\n\n".join([_greeting(customer_name), *lines, _signature()]),
        html=_wrap_html("Direct Debit payment", [_greeting(customer_name), *lines]),
    )


def recurring_failed(
    *, recipient: str, customer_name: str | None, description: str, amount_pence: int
) -> Notification:
    notification = payment_failed(
        recipient=recipient,
        customer_name=customer_name,
        description=description,
        amount_pence=amount_pence,
    )
    return Notification(
        template=TEMPLATE_RECURRING_FAILED,
        recipient=notification.recipient,
        subject=notification.subject,
        body=notification.body,
        html=notification.html,
    )


async def deliver(adapter, notifications: Iterable[Notification | None]) -> int:
    """Send each notification, best effort. Returns how many were sent.

    Email is never part of a money operation: a failed send is logged and
    counted, and the caller carries on.
    """
    sent = 0
    for notification in notifications:
        if notification is None or not notification.recipient:
            continue
        if adapter is None:
            metrics.record_email_notification(notification.template, "skipped")
            continue
        try:
            delivered = await adapter.send_email(
                notification.recipient,
                notification.subject,
                notification.body,
                html=notification.html,
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "payment_email_failed",
                exc_info=True,
                extra={"extra": {"template": notification.template}},
            )
            metrics.record_email_notification(notification.template, "error")
            continue
        status = "sent" if delivered else "skipped"
        metrics.record_email_notification(notification.template, status)
        if delivered:
            sent += 1
    return sent
