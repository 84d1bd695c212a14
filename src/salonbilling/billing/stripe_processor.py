"""Stripe binding for ``PaymentProcessorClient``."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar

import stripe

from salonbilling.billing.processor import (
    InvoiceLineItem,
    ProcessorInvoice,
    ProcessorSubscription,
    ProrationPolicy,
    SetupIntentResult,
)
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import (
    ConfigurationError,
    PaymentDeclinedError,
    PaymentProcessorError,
    ProcessorRateLimitedError,
    ProcessorTimeoutError,
)
from salonbilling.core.logging import LoggerMixin
from salonbilling.core.metrics import track_processor_call

T = TypeVar("T")

_SUBSCRIPTION_EXPAND = ["latest_invoice.payment_intent", "pending_setup_intent"]


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or plain dict."""
    if obj is None or isinstance(obj, str):
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return default
    return default if value is None else value


def _ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _cents_to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(int(value)) / 100).quantize(Decimal("0.01"))


def _object_id(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


def to_processor_subscription(sub: Any) -> ProcessorSubscription:
    """Flatten a Stripe subscription into the engine's view of it.

    Period bounds moved from the subscription to its items in newer API
    versions; both locations are read.
    """
    items = _get(_get(sub, "items"), "data") or []
    first_item = items[0] if items else None
    latest_invoice = _get(sub, "latest_invoice")

    client_secret = _get(_get(latest_invoice, "payment_intent"), "client_secret") or _get(
        _get(sub, "pending_setup_intent"), "client_secret"
    )

    return ProcessorSubscription(
        subscription_id=_get(sub, "id"),
        customer_id=_object_id(_get(sub, "customer")),
        status=_get(sub, "status"),
        price_ref=_get(_get(first_item, "price"), "id"),
        current_period_start=_ts(
            _get(sub, "current_period_start") or _get(first_item, "current_period_start")
        ),
        current_period_end=_ts(
            _get(sub, "current_period_end") or _get(first_item, "current_period_end")
        ),
        cancel_at_period_end=bool(_get(sub, "cancel_at_period_end", False)),
        trial_end=_ts(_get(sub, "trial_end")),
        canceled_at=_ts(_get(sub, "canceled_at")),
        client_secret=client_secret,
        invoice_amount_due=_cents_to_decimal(_get(latest_invoice, "amount_due")),
        default_payment_method_type=_get(_get(sub, "default_payment_method"), "type"),
    )


def invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription an invoice belongs to, across API versions."""
    direct = _object_id(_get(invoice, "subscription"))
    if direct:
        return direct
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _object_id(_get(details, "subscription"))


def subscription_tenant_id(sub: Any) -> str | None:
    """Tenant recorded in the subscription's metadata at creation."""
    return _get(_get(sub, "metadata"), "tenant_id")


def translate_stripe_error(exc: stripe.StripeError, operation: str) -> PaymentProcessorError:
    """Map a Stripe SDK error onto the engine's processor errors.

    Only the decline message Stripe writes for end users is passed through;
    everything else stays in ``details`` and logs.
    """
    common: dict[str, Any] = {
        "operation": operation,
        "processor_code": getattr(exc, "code", None),
        "status_code": getattr(exc, "http_status", None),
    }
    if isinstance(exc, stripe.CardError):
        return PaymentDeclinedError(
            str(exc),
            retryable=False,
            user_message=getattr(exc, "user_message", None) or None,
            **common,
        )
    if isinstance(exc, stripe.RateLimitError):
        return ProcessorRateLimitedError(str(exc), retryable=True, **common)
    if isinstance(exc, stripe.APIConnectionError):
        # The request may have reached Stripe; the outcome is unknown.
        return ProcessorTimeoutError(str(exc), retryable=True, **common)
    if isinstance(exc, stripe.APIError):
        return PaymentProcessorError(str(exc), retryable=True, **common)
    if isinstance(exc, stripe.AuthenticationError | stripe.PermissionError):
        return PaymentProcessorError(str(exc), retryable=False, **common)
    status = getattr(exc, "http_status", None) or 0
    return PaymentProcessorError(str(exc), retryable=status >= 500, **common)


class StripeProcessor(LoggerMixin):
    """Calls Stripe through a dedicated ``StripeClient``.

    The SDK is synchronous; calls run in a worker thread bounded by the HTTP
    client timeout. SDK-level retries are disabled so retries stay under the
    engine's idempotency rules.
    """

    def __init__(
        self,
        client: stripe.StripeClient,
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._client = client
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> StripeProcessor:
        if not settings.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            stripe_version=settings.stripe_api_version,
            max_network_retries=0,
            http_client=stripe.RequestsClient(timeout=settings.processor_timeout_seconds),
        )
        return cls(client, timeout_seconds=settings.processor_timeout_seconds)

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        with track_processor_call(operation):
            try:
                # Small margin over the HTTP timeout so the SDK reports first.
                return await asyncio.wait_for(asyncio.to_thread(fn), self._timeout + 2)
            except TimeoutError as exc:
                self.logger.error("processor_call_timed_out", operation=operation)
                raise ProcessorTimeoutError(
                    f"{operation} did not complete within {self._timeout}s",
                    retryable=True,
                    operation=operation,
                ) from exc
            except stripe.StripeError as exc:
                error = translate_stripe_error(exc, operation)
                self.logger.warning(
                    "processor_call_failed",
                    operation=operation,
                    error_type=type(exc).__name__,
                    processor_code=error.processor_code,
                    retryable=error.retryable,
                )
                raise error from exc

    @staticmethod
    def _options(idempotency_key: str) -> dict[str, str]:
        return {"idempotency_key": idempotency_key}

    async def get_or_create_customer(
        self, tenant_id: str, email: str | None, *, idempotency_key: str
    ) -> str:
        found = await self._call(
            "search_customer",
            lambda: self._client.customers.search(
                params={"query": f"metadata['tenant_id']:'{tenant_id}'", "limit": 1}
            ),
        )
        existing = _get(found, "data") or []
        if existing:
            return _get(existing[0], "id")

        params: dict[str, Any] = {"metadata": {"tenant_id": tenant_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            "create_customer",
            lambda: self._client.customers.create(
                params=params, options=self._options(idempotency_key)
            ),
        )
        self.logger.info("processor_customer_created", tenant_id=tenant_id)
        return _get(customer, "id")

    async def attach_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None:
        await self._call(
            "attach_payment_method",
            lambda: self._client.payment_methods.attach(
                method_ref,
                params={"customer": customer_id},
                options=self._options(idempotency_key),
            ),
        )

    async def set_default_payment_method(
        self, customer_id: str, method_ref: str, *, idempotency_key: str
    ) -> None:
        await self._call(
            "set_default_payment_method",
            lambda: self._client.customers.update(
                customer_id,
                params={"invoice_settings": {"default_payment_method": method_ref}},
                options=self._options(idempotency_key),
            ),
        )

    async def create_subscription(
        self,
        customer_id: str,
        price_ref: str,
        *,
        trial_days: int | None,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> ProcessorSubscription:
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_ref}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "metadata": dict(metadata),
            "expand": _SUBSCRIPTION_EXPAND,
        }
        if trial_days:
            params["trial_period_days"] = trial_days
        sub = await self._call(
            "create_subscription",
            lambda: self._client.subscriptions.create(
                params=params, options=self._options(idempotency_key)
            ),
        )
        return to_processor_subscription(sub)

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        sub = await self._call(
            "retrieve_subscription",
            lambda: self._client.subscriptions.retrieve(
                subscription_id, params={"expand": ["latest_invoice"]}
            ),
        )
        return to_processor_subscription(sub)

    async def _first_item_id(self, subscription_id: str) -> str:
        sub = await self._call(
            "retrieve_subscription",
            lambda: self._client.subscriptions.retrieve(subscription_id),
        )
        items = _get(_get(sub, "items"), "data") or []
        if not items:
            raise PaymentProcessorError(
                f"Subscription {subscription_id} has no items",
                operation="update_subscription_price",
            )
        return _get(items[0], "id")

    async def update_subscription_price(
        self,
        subscription_id: str,
        price_ref: str,
        proration: ProrationPolicy,
        *,
        idempotency_key: str,
    ) -> ProcessorSubscription:
        item_id = await self._first_item_id(subscription_id)
        sub = await self._call(
            "update_subscription_price",
            lambda: self._client.subscriptions.update(
                subscription_id,
                params={
                    "items": [{"id": item_id, "price": price_ref}],
                    "proration_behavior": proration.value,
                    "expand": ["latest_invoice"],
                },
                options=self._options(idempotency_key),
            ),
        )
        result = to_processor_subscription(sub)
        if proration is ProrationPolicy.NONE:
            # latest_invoice is the previous period's invoice, not a charge for this change.
            return _without_amount(result)
        return result

    async def cancel_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        sub = await self._call(
            "cancel_subscription",
            lambda: self._client.subscriptions.cancel(
                subscription_id, options=self._options(idempotency_key)
            ),
        )
        return to_processor_subscription(sub)

    async def _set_cancel_at_period_end(
        self, operation: str, subscription_id: str, value: bool, idempotency_key: str
    ) -> ProcessorSubscription:
        sub = await self._call(
            operation,
            lambda: self._client.subscriptions.update(
                subscription_id,
                params={"cancel_at_period_end": value},
                options=self._options(idempotency_key),
            ),
        )
        return _without_amount(to_processor_subscription(sub))

    async def schedule_cancel_at_period_end(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        return await self._set_cancel_at_period_end(
            "schedule_cancel", subscription_id, True, idempotency_key
        )

    async def resume_subscription(
        self, subscription_id: str, *, idempotency_key: str
    ) -> ProcessorSubscription:
        return await self._set_cancel_at_period_end(
            "resume_subscription", subscription_id, False, idempotency_key
        )

    async def end_trial_now(
        self,
        subscription_id: str,
        *,
        price_ref: str | None,
        idempotency_key: str,
    ) -> ProcessorSubscription:
        params: dict[str, Any] = {"trial_end": "now", "expand": ["latest_invoice"]}
        if price_ref:
            item_id = await self._first_item_id(subscription_id)
            params["items"] = [{"id": item_id, "price": price_ref}]
            params["proration_behavior"] = ProrationPolicy.NONE.value
        sub = await self._call(
            "end_trial",
            lambda: self._client.subscriptions.update(
                subscription_id, params=params, options=self._options(idempotency_key)
            ),
        )
        return to_processor_subscription(sub)

    async def create_setup_intent(
        self,
        customer_id: str,
        method_kind: str,
        details: Mapping[str, Any],
        *,
        idempotency_key: str,
    ) -> SetupIntentResult:
        if method_kind != "sepa":
            raise PaymentProcessorError(
                f"Unsupported setup method {method_kind!r}", operation="create_setup_intent"
            )
        intent = await self._call(
            "create_setup_intent",
            lambda: self._client.setup_intents.create(
                params={
                    "customer": customer_id,
                    "payment_method_types": ["sepa_debit"],
                    "payment_method_data": {
                        "type": "sepa_debit",
                        "billing_details": {
                            "name": details["account_holder_name"],
                            "email": details["email"],
                        },
                        "sepa_debit": {"iban": details["iban"]},
                    },
                    "metadata": {"payment_type": "sepa"},
                },
                options=self._options(idempotency_key),
            ),
        )
        return SetupIntentResult(
            setup_intent_id=_get(intent, "id"),
            client_secret=_get(intent, "client_secret"),
            status=_get(intent, "status"),
        )

    async def create_and_send_invoice(
        self,
        customer_id: str,
        line_item: InvoiceLineItem,
        days_until_due: int,
        *,
        idempotency_key: str,
    ) -> ProcessorInvoice:
        # Each step has its own key derived from the logical request key.
        invoice = await self._call(
            "create_invoice",
            lambda: self._client.invoices.create(
                params={
                    "customer": customer_id,
                    "collection_method": "send_invoice",
                    "days_until_due": days_until_due,
                    "auto_advance": True,
                    "currency": line_item.currency,
                    "metadata": {"payment_type": "invoice"},
                },
                options=self._options(f"{idempotency_key}:invoice"),
            ),
        )
        invoice_id = _get(invoice, "id")
        amount_cents = int((line_item.amount * 100).to_integral_value())
        await self._call(
            "create_invoice_item",
            lambda: self._client.invoice_items.create(
                params={
                    "customer": customer_id,
                    "invoice": invoice_id,
                    "amount": amount_cents,
                    "currency": line_item.currency,
                    "description": line_item.description,
                },
                options=self._options(f"{idempotency_key}:item"),
            ),
        )
        finalized = await self._call(
            "finalize_invoice",
            lambda: self._client.invoices.finalize_invoice(
                invoice_id, options=self._options(f"{idempotency_key}:finalize")
            ),
        )
        await self._call(
            "send_invoice",
            lambda: self._client.invoices.send_invoice(
                invoice_id, options=self._options(f"{idempotency_key}:send")
            ),
        )
        return ProcessorInvoice(
            invoice_id=invoice_id,
            hosted_url=_get(finalized, "hosted_invoice_url"),
            pdf_url=_get(finalized, "invoice_pdf"),
            due_date=_ts(_get(finalized, "due_date")),
            amount_due=_cents_to_decimal(_get(finalized, "amount_due", amount_cents)),
            status=_get(finalized, "status", "open"),
        )


def _without_amount(sub: ProcessorSubscription) -> ProcessorSubscription:
    return replace(sub, invoice_amount_due=None)
