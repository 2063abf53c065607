from __future__ import annotations

import logging
from dataclasses import dataclass

from app.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from app.infra.metrics import Metrics, configure_metrics
from app.infra.stripe_client import StripeClient

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """The payment collaborators bound onto ``app.state`` at startup."""

    stripe_client: StripeClient
    email_adapter: EmailAdapter | NoopEmailAdapter
    metrics: Metrics


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    services = AppServices(
        stripe_client=StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
        ),
        email_adapter=resolve_email_adapter(app_settings),
        metrics=metrics or configure_metrics(app_settings.metrics_enabled),
    )
    logger.info(
        "services_configured",
        extra={
            "extra": {
                "stripe_configured": bool(app_settings.stripe_secret_key),
                "webhook_configured": bool(app_settings.stripe_webhook_secret),
                "email_mode": app_settings.email_mode,
                "metrics_enabled": services.metrics.enabled,
            }
        },
    )
    return services
