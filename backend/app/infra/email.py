import base64
import logging
import random
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from app.infra.metrics import metrics
from app.settings import settings
from app.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"


def _resolve_recipient(recipient: str) -> str:
    # Non-production deployments route every message to one inbox.
    return settings.email_test_recipient or recipient


class NoopEmailAdapter:
    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        attachments: list[EmailAttachment] | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:  # noqa: D401
        logger.info(
            "email_send_skipped",
            extra={"extra": {"recipient": recipient, "subject": subject, "mode": "noop"}},
        )
        metrics.record_email_adapter("skipped")
        return False


class EmailAdapter:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=settings.email_circuit_failure_threshold,
            recovery_time=settings.email_circuit_recovery_seconds,
        )

    async def send_email(
        self,
        recipient: str,
        subject: str,
        body: str,
        *,
        html: str | None = None,
        attachments: list[EmailAttachment] | None = None,
        headers: dict[str, str] | None = None,
    ) -> bool:
        if settings.email_mode == "off" or not recipient:
            metrics.record_email_adapter("skipped")
            return False
        to_email = _resolve_recipient(recipient)
        try:
            await self._breaker.call(
                self._send_email,
                to_email=to_email,
                subject=subject,
                body=body,
                html=html,
                attachments=attachments or [],
                headers=headers,
            )
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open", extra={"extra": {"recipient": to_email}})
            metrics.record_email_adapter("circuit_open")
            return False
        except Exception:
            metrics.record_email_adapter("error")
            raise
        metrics.record_email_adapter("sent")
        return True

    async def _send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        html: str | None,
        attachments: list[EmailAttachment],
        headers: dict[str, str] | None = None,
    ) -> None:
        if settings.email_mode == "sendgrid":
            await self._send_via_sendgrid(to_email, subject, body, html, attachments, headers)
            return
        if settings.email_mode == "smtp":
            await self._send_via_smtp(to_email, subject, body, html, attachments, headers)
            return
        raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(
        self,
        to_email: str,
        subject: str,
        body: str,
        html: str | None,
        attachments: list[EmailAttachment],
        headers: dict[str, str] | None,
    ) -> None:
        api_key = settings.sendgrid_api_key
        from_email = settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        content = [{"type": "text/plain", "value": body}]
        if html:
            content.append({"type": "text/html", "value": html})
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {"email": from_email},
            "subject": subject,
            "content": content,
        }
        if settings.email_from_name:
            payload["from"]["name"] = settings.email_from_name
        if headers:
            payload["headers"] = headers
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(attachment.content).decode(),
                    "filename": attachment.filename,
                    "type": attachment.content_type,
                    "disposition": "attachment",
                }
                for attachment in attachments
            ]
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        try:
            response = await _post_with_retry(
                client,
                headers={"Authorization": f"Bearer {api_key}"},
                json=payload,
            )
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(
        self,
        to_email: str,
        subject: str,
        body: str,
        html: str | None,
        attachments: list[EmailAttachment],
        headers: dict[str, str] | None,
    ) -> None:
        host = settings.smtp_host
        port = settings.smtp_port or 587
        username = settings.smtp_username
        password = settings.smtp_password
        from_email = settings.email_sender
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = (
            formataddr((settings.email_from_name, from_email)) if settings.email_from_name else from_email
        )
        message["To"] = to_email
        message["Subject"] = subject
        for header_name, header_value in (headers or {}).items():
            message[header_name] = header_value
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")
        for attachment in attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            message.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )

        def _send_blocking() -> None:
            if settings.smtp_use_tls:
                with smtplib.SMTP(host, port, timeout=settings.smtp_timeout_seconds) as smtp:
                    smtp.starttls()
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)
            else:
                with smtplib.SMTP_SSL(host, port, timeout=settings.smtp_timeout_seconds) as smtp:
                    if username and password:
                        smtp.login(username, password)
                    smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter()


def resolve_app_email_adapter(app_like) -> EmailAdapter | NoopEmailAdapter | None:
    state = getattr(app_like, "state", None)
    if state is None:
        return None
    app_state = getattr(getattr(app_like, "app", None), "state", None) or state
    adapter = getattr(app_state, "email_adapter", None)
    if adapter is not None:
        return adapter
    services = getattr(app_state, "services", None)
    if services is not None:
        return getattr(services, "email_adapter", None)
    return None


def _backoff_delay(attempt: int) -> float:
    delay = min(
        settings.email_http_backoff_seconds * (2 ** (attempt - 1)),
        settings.email_http_backoff_max_seconds,
    )
    return delay + delay * random.uniform(0.0, 0.3)


async def _post_with_retry(
    client: httpx.AsyncClient,
    *,
    headers: dict[str, str],
    json: dict[str, Any],
) -> httpx.Response:
    max_attempts = max(1, settings.email_http_max_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            response = await client.post(
                SENDGRID_SEND_URL,
                headers=headers,
                json=json,
                timeout=settings.email_timeout_seconds,
            )
        except (httpx.TimeoutException, httpx.ConnectError):
            if attempt >= max_attempts:
                raise
            await anyio.sleep(_backoff_delay(attempt))
            continue
        retryable = response.status_code == 429 or response.status_code >= 500
        if retryable and attempt < max_attempts:
            await anyio.sleep(_backoff_delay(attempt))
            continue
        return response
    raise RuntimeError("email_http_retry_exhausted")  # pragma: no cover
