import math

from app.settings import settings
from app.shared.circuit_breaker import CircuitBreaker

stripe_circuit = CircuitBreaker(
    name="stripe",
    failure_threshold=settings.stripe_circuit_failure_threshold,
    recovery_time=settings.stripe_circuit_recovery_seconds,
    window_seconds=settings.stripe_circuit_window_seconds,
    half_open_max_calls=settings.stripe_circuit_half_open_max_calls,
    timeout_seconds=settings.stripe_request_timeout_seconds,
)


def stripe_retry_after_seconds() -> int:
    """How long a caller should back off after a payment call failed fast."""
    remaining = stripe_circuit.seconds_until_retry()
    if remaining <= 0:
        remaining = stripe_circuit.recovery_time
    return max(1, math.ceil(remaining))


def stripe_readiness(app_settings) -> dict[str, object]:
    # An open circuit degrades payments but the service still answers.
    return {
        "configured": bool(getattr(app_settings, "stripe_secret_key", None)),
        "webhook_configured": bool(getattr(app_settings, "stripe_webhook_secret", None)),
        "circuit": stripe_circuit.state,
    }
