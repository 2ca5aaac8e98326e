"""Payment provider event verification and parsing."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from duka_billing.core.config import settings
from duka_billing.models.payment import PaymentProvider, PaymentStatus


class WebhookVerificationError(ValueError):
    """Raised when a webhook body or its signature cannot be trusted."""


@dataclass
class ProviderEvent:
    """A verified provider event, reduced to what the handlers need."""

    event_id: str
    event_type: str
    data_object: dict[str, Any]
    payload: dict[str, Any] = field(repr=False)
    created: datetime | None = None


# Stripe PaymentIntent events and the local payment status they map to
PAYMENT_INTENT_STATUSES = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELED,
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.requires_action": PaymentStatus.REQUIRES_ACTION,
}


def from_unix(value: Any) -> datetime | None:
    """Convert a provider epoch timestamp to an aware UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def parse_event(payload: dict[str, Any]) -> ProviderEvent:
    """Build a ``ProviderEvent`` from a decoded event body (e.g. a stored ledger payload)."""
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise WebhookVerificationError("Event is missing id or type")
    data_object = (payload.get("data") or {}).get("object") or {}
    return ProviderEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        data_object=data_object,
        payload=payload,
        created=from_unix(payload.get("created")),
    )


class StripeProvider:
    """Verifies Stripe webhook deliveries locally; no Stripe API calls are made."""

    def __init__(self, webhook_secret: str | None = None):
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._stripe: Any = None

    @property
    def provider_name(self) -> PaymentProvider:
        return PaymentProvider.STRIPE

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            import stripe

            self._stripe = stripe
        return self._stripe

    def construct_event(self, raw_body: bytes, signature: str | None) -> ProviderEvent:
        """Verify ``raw_body`` against its ``Stripe-Signature`` header and parse it.

        Raises:
            WebhookVerificationError: If the secret is unset, the signature is
                missing or invalid, or the body is not a valid event.
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        try:
            self.stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except (ValueError, self.stripe.SignatureVerificationError) as exc:
            raise WebhookVerificationError(str(exc)) from exc

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise WebhookVerificationError("Body is not valid JSON") from exc
        return parse_event(payload)
