from __future__ import annotations

import inspect
from typing import Any, Callable

import anyio

from app.infra.stripe_resilience import stripe_circuit
from app.settings import settings


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "expire_",
    "refund_",
    "update_",
    "void_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
    "verify_",
)


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    """Thin async facade over the Stripe SDK.

    Every SDK call that reaches the Stripe API runs on a worker thread under
    the ``stripe`` circuit breaker, which also bounds it with
    ``stripe_request_timeout_seconds``. Webhook verification stays local.
    """

    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        stripe_sdk: Any | None = None,
    ) -> None:
        if stripe_sdk is None:
            import stripe as stripe_sdk  # type: ignore

        self.stripe = stripe_sdk
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret

    def _require_secret_key(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        def _sync_call() -> Any:
            return fn(*args, **kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    @staticmethod
    def _with_idempotency(payload: dict[str, Any], idempotency_key: str | None) -> dict[str, Any]:
        if idempotency_key:
            payload["idempotency_key"] = idempotency_key
        return payload

    async def create_customer(
        self,
        *,
        name: str,
        email: str | None,
        address: dict[str, str] | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._require_secret_key()
        payload: dict[str, Any] = {"name": name, "metadata": metadata or {}}
        if email:
            payload["email"] = email
        if address:
            payload["address"] = address
        return await self._call(
            self.stripe.Customer.create, **self._with_idempotency(payload, idempotency_key)
        )

    async def create_checkout_session(
        self,
        *,
        mode: str,
        success_url: str,
        cancel_url: str,
        payment_method_types: list[str],
        customer: str | None = None,
        amount_pence: int | None = None,
        currency: str | None = None,
        product_name: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Create a hosted Checkout Session in ``payment`` or ``setup`` mode.

        ``metadata`` is copied onto the PaymentIntent (payment mode) or the
        SetupIntent (setup mode) so downstream events carry it as well.
        """
        self._require_secret_key()
        payload: dict[str, Any] = {
            "mode": mode,
            "payment_method_types": payment_method_types,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if customer:
            payload["customer"] = customer
        if mode == "payment":
            if amount_pence is None or amount_pence <= 0:
                raise ValueError("payment mode requires a positive amount")
            payload["line_items"] = [
                {
                    "price_data": {
                        "currency": currency or settings.stripe_currency,
                        "product_data": {"name": product_name or "Payment"},
                        "unit_amount": amount_pence,
                    },
                    "quantity": 1,
                }
            ]
            payload["payment_intent_data"] = {"metadata": metadata or {}}
        elif mode == "setup":
            payload["setup_intent_data"] = {"metadata": metadata or {}}
        else:
            raise ValueError(f"unsupported checkout mode: {mode}")
        return await self._call(
            self.stripe.checkout.Session.create, **self._with_idempotency(payload, idempotency_key)
        )

    async def create_refund(
        self,
        *,
        amount_pence: int,
        payment_intent: str | None = None,
        charge: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._require_secret_key()
        if not payment_intent and not charge:
            raise ValueError("refund requires a payment_intent or a charge")
        payload: dict[str, Any] = {"amount": amount_pence, "metadata": metadata or {}}
        if payment_intent:
            payload["payment_intent"] = payment_intent
        else:
            payload["charge"] = charge
        return await self._call(
            self.stripe.Refund.create, **self._with_idempotency(payload, idempotency_key)
        )

    async def create_off_session_payment(
        self,
        *,
        customer: str,
        payment_method: str | None,
        mandate: str,
        amount_pence: int,
        description: str,
        metadata: dict[str, str] | None = None,
        currency: str | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Create and confirm a Bacs Direct Debit PaymentIntent against a mandate."""
        self._require_secret_key()
        payload: dict[str, Any] = {
            "amount": amount_pence,
            "currency": currency or settings.stripe_currency,
            "customer": customer,
            "payment_method_types": ["bacs_debit"],
            "mandate": mandate,
            "confirm": True,
            "off_session": True,
            "description": description,
            "metadata": metadata or {},
        }
        if payment_method:
            payload["payment_method"] = payment_method
        return await self._call(
            self.stripe.PaymentIntent.create, **self._with_idempotency(payload, idempotency_key)
        )

    async def retrieve_setup_intent(self, setup_intent_id: str) -> Any:
        self._require_secret_key()
        return await self._call(self.stripe.SetupIntent.retrieve, setup_intent_id)

    async def retrieve_payment_method(self, payment_method_id: str) -> Any:
        self._require_secret_key()
        return await self._call(self.stripe.PaymentMethod.retrieve, payment_method_id)

    async def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        # Signature checks are local HMAC work; a forged body must not trip the stripe circuit.
        return self.stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.webhook_secret,
        )


def resolve_client(app_state: Any) -> StripeClient:
    """Resolve the StripeClient for the current app.

    Order: ``state.stripe_client``, then ``services.stripe_client``, then a
    new client built from ``app_settings`` or the global settings.
    """
    state = getattr(app_state, "state", app_state)
    client = getattr(state, "stripe_client", None)
    if client is not None:
        return client
    services = getattr(state, "services", None)
    if services is not None and getattr(services, "stripe_client", None) is not None:
        return services.stripe_client
    app_settings = getattr(state, "app_settings", None)
    client = StripeClient(
        secret_key=getattr(app_settings, "stripe_secret_key", None) or settings.stripe_secret_key,
        webhook_secret=getattr(app_settings, "stripe_webhook_secret", None) or settings.stripe_webhook_secret,
    )
    state.stripe_client = client
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
