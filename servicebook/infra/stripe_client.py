from __future__ import annotations

from datetime import datetime
from typing import Any

from servicebook.settings import settings


class StripeClient:
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
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _authenticate(self) -> None:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")
        self.stripe.api_key = self.secret_key

    def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        expires_at: datetime,
        metadata: dict[str, str] | None = None,
        product_name: str = "Service booking",
        payment_intent_metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._authenticate()
        payload: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": int(expires_at.timestamp()),
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata or {},
        }
        if payment_intent_metadata:
            payload["payment_intent_data"] = {"metadata": payment_intent_metadata}
        if idempotency_key:
            return self.stripe.checkout.Session.create(idempotency_key=idempotency_key, **payload)
        return self.stripe.checkout.Session.create(**payload)

    def retrieve_checkout_session(self, session_id: str) -> Any:
        self._authenticate()
        return self.stripe.checkout.Session.retrieve(session_id)

    def create_refund(
        self,
        *,
        payment_intent: str,
        amount_cents: int,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        self._authenticate()
        payload: dict[str, Any] = {
            "payment_intent": payment_intent,
            "amount": amount_cents,
            "metadata": metadata or {},
        }
        if idempotency_key:
            return self.stripe.Refund.create(idempotency_key=idempotency_key, **payload)
        return self.stripe.Refund.create(**payload)

    def verify_webhook(self, payload: bytes, signature: str | None) -> Any:
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise ValueError("Missing Stripe signature header")
        return self.stripe.Webhook.construct_event(
            payload=payload, sig_header=signature, secret=self.webhook_secret
        )


def resolve_client(app_state: Any) -> StripeClient:
    client = getattr(app_state, "stripe_client", None)
    if client is None:
        client = StripeClient(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        )
        app_state.stripe_client = client
    return client


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)
