"""Inbound Stripe events.

Events only ever move the snapshot toward what the processor already
decided. Each event id is handled once; a handler failure forgets the id so
Stripe's redelivery gets another chance.
"""

from __future__ import annotations

from typing import Any

import stripe

from salonbilling.billing.idempotency import IdempotencyStore
from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.stripe_processor import (
    invoice_subscription_id,
    subscription_tenant_id,
    to_processor_subscription,
)
from salonbilling.core.exceptions import WebhookSignatureError
from salonbilling.core.logging import LoggerMixin

SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class StripeWebhookHandler(LoggerMixin):
    """Verifies and dispatches Stripe webhook events."""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycle,
        idempotency: IdempotencyStore,
        webhook_secret: str,
    ) -> None:
        self.lifecycle = lifecycle
        self.idempotency = idempotency
        self.webhook_secret = webhook_secret

    def verify(self, payload: bytes, signature: str | None) -> Any:
        """Parse the event, rejecting anything not signed with our secret.

        Raises:
            WebhookSignatureError: Missing or invalid signature, or a body
                that is not an event.
        """
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise WebhookSignatureError("Malformed webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError() from exc

    async def handle(self, event: Any) -> str:
        """Apply one verified event. Returns what happened, for the response body."""
        event_id = event["id"]
        event_type = event["type"]
        if not await self.idempotency.mark_event_processed(event_id):
            return "duplicate"

        try:
            outcome = await self._dispatch(event_type, event["data"]["object"])
        except Exception:
            await self.idempotency.forget_event(event_id)
            self.logger.exception("webhook_event_failed", event_id=event_id, event_type=event_type)
            raise

        self.logger.info(
            "webhook_event_processed", event_id=event_id, event_type=event_type, outcome=outcome
        )
        return outcome

    async def _dispatch(self, event_type: str, obj: Any) -> str:
        if event_type in SUBSCRIPTION_EVENTS:
            snapshot = await self.lifecycle.sync_from_processor(
                to_processor_subscription(obj), tenant_id=subscription_tenant_id(obj)
            )
            return "synced" if snapshot is not None else "unmatched"

        if event_type in (INVOICE_PAID, INVOICE_PAYMENT_FAILED):
            subscription_id = invoice_subscription_id(obj)
            if not subscription_id:
                # One-off manual invoices carry no subscription.
                return "ignored"
            snapshot = await self.lifecycle.record_payment_outcome(
                subscription_id, paid=event_type == INVOICE_PAID
            )
            return "recorded" if snapshot is not None else "unmatched"

        return "ignored"
