import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.stripe_webhook_events = None
            self.webhook_errors = None
            self.ledger_entries = None
            self.checkout_sessions = None
            self.refunds = None
            self.recurring_charges = None
            self.email_adapter_outcomes = None
            self.email_notifications = None
            self.auth_failures = None
            self.http_5xx = None
            self.http_latency = None
            self.circuit_state = None
            return

        self.stripe_webhook_events = Counter(
            "stripe_webhook_events_total",
            "Stripe webhook outcomes by result.",
            ["outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook errors by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.ledger_entries = Counter(
            "ledger_entries_total",
            "Ledger rows written or transitioned, by category and status.",
            ["category", "status"],
            registry=self.registry,
        )
        self.checkout_sessions = Counter(
            "checkout_sessions_total",
            "Checkout session creation attempts by flow and outcome.",
            ["flow", "outcome"],
            registry=self.registry,
        )
        self.refunds = Counter(
            "refunds_total",
            "Refund attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.recurring_charges = Counter(
            "recurring_charges_total",
            "Recurring Direct Debit charge attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.email_adapter_outcomes = Counter(
            "email_adapter_outcomes_total",
            "Email adapter send outcomes.",
            ["status"],
            registry=self.registry,
        )
        self.email_notifications = Counter(
            "email_notifications_total",
            "Payment email notifications by template and status.",
            ["template", "status"],
            registry=self.registry,
        )
        self.auth_failures = Counter(
            "auth_failures_total",
            "Authentication failures by reason.",
            ["source", "reason"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_stripe_webhook(self, outcome: str) -> None:
        if not self.enabled or self.stripe_webhook_events is None:
            return
        self.stripe_webhook_events.labels(outcome=outcome or "unknown").inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        self.webhook_errors.labels(type=error_type or "unknown").inc()

    def record_ledger_entry(self, category: str, status: str) -> None:
        if not self.enabled or self.ledger_entries is None:
            return
        self.ledger_entries.labels(category=category or "unknown", status=status or "unknown").inc()

    def record_checkout(self, flow: str, outcome: str) -> None:
        if not self.enabled or self.checkout_sessions is None:
            return
        self.checkout_sessions.labels(flow=flow or "unknown", outcome=outcome).inc()

    def record_refund(self, outcome: str) -> None:
        if not self.enabled or self.refunds is None:
            return
        self.refunds.labels(outcome=outcome).inc()

    def record_recurring_charge(self, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.recurring_charges is None:
            return
        if count <= 0:
            return
        self.recurring_charges.labels(outcome=outcome).inc(count)

    def record_email_adapter(self, status: str) -> None:
        if not self.enabled or self.email_adapter_outcomes is None:
            return
        self.email_adapter_outcomes.labels(status=status or "unknown").inc()

    def record_email_notification(self, template: str, status: str) -> None:
        if not self.enabled or self.email_notifications is None:
            return
        self.email_notifications.labels(template=template or "unknown", status=status).inc()

    def record_auth_failure(self, source: str, reason: str) -> None:
        if not self.enabled or self.auth_failures is None:
            return
        self.auth_failures.labels(source=source, reason=reason or "unknown").inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
