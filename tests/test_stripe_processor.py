"""Tests for the Stripe processor binding."""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import stripe

from salonbilling.billing.processor import InvoiceLineItem, ProrationPolicy
from salonbilling.billing.stripe_processor import (
    StripeProcessor,
    invoice_subscription_id,
    subscription_tenant_id,
    to_processor_subscription,
    translate_stripe_error,
)
from salonbilling.core.config import Settings
from salonbilling.core.exceptions import (
    ConfigurationError,
    PaymentDeclinedError,
    PaymentProcessorError,
    ProcessorRateLimitedError,
    ProcessorTimeoutError,
)

PERIOD_START = 1_717_200_000
PERIOD_END = 1_719_792_000


def stripe_subscription(**overrides: object) -> dict:
    sub = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "metadata": {"tenant_id": "salon-1"},
        "items": {
            "data": [
                {
                    "id": "si_123",
                    "price": {"id": "price_pro_monthly"},
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                }
            ]
        },
        "latest_invoice": {
            "amount_due": 10050,
            "payment_intent": {"client_secret": "pi_123_secret"},
        },
    }
    sub.update(overrides)
    return sub


@pytest.fixture
def stripe_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def stripe_processor(stripe_client: MagicMock) -> StripeProcessor:
    return StripeProcessor(stripe_client, timeout_seconds=5)


class TestTranslateStripeError:
    """Tests for mapping SDK errors."""

    def test_card_error_is_declined(self) -> None:
        """Test card errors are not retryable and keep Stripe's message."""
        exc = stripe.CardError("Your card was declined.", None, "card_declined", http_status=402)
        error = translate_stripe_error(exc, "create_subscription")
        assert isinstance(error, PaymentDeclinedError)
        assert not error.retryable
        assert error.processor_code == "card_declined"
        assert error.details["operation"] == "create_subscription"

    @pytest.mark.parametrize(
        ("exc", "error_type", "retryable"),
        [
            (stripe.RateLimitError("slow down"), ProcessorRateLimitedError, True),
            (stripe.APIConnectionError("connection reset"), ProcessorTimeoutError, True),
            (stripe.APIError("server error"), PaymentProcessorError, True),
            (stripe.AuthenticationError("bad key"), PaymentProcessorError, False),
            (stripe.InvalidRequestError("no such price", "price"), PaymentProcessorError, False),
        ],
    )
    def test_error_classes(
        self, exc: stripe.StripeError, error_type: type, retryable: bool
    ) -> None:
        """Test each SDK error class maps to the right retry behavior."""
        error = translate_stripe_error(exc, "update_subscription_price")
        assert type(error) is error_type
        assert error.retryable is retryable


class TestToProcessorSubscription:
    """Tests for flattening Stripe subscriptions."""

    def test_reads_item_periods_and_invoice(self) -> None:
        """Test period bounds from items and the first payment's secret."""
        sub = to_processor_subscription(stripe_subscription())
        assert sub.subscription_id == "sub_123"
        assert sub.customer_id == "cus_123"
        assert sub.price_ref == "price_pro_monthly"
        assert sub.current_period_start == datetime.fromtimestamp(PERIOD_START, tz=UTC)
        assert sub.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=UTC)
        assert sub.client_secret == "pi_123_secret"
        assert sub.invoice_amount_due == Decimal("100.50")

    def test_prefers_top_level_periods_and_expanded_customer(self) -> None:
        """Test older API versions with periods on the subscription."""
        sub = to_processor_subscription(
            stripe_subscription(
                customer={"id": "cus_456"},
                current_period_end=PERIOD_END + 60,
                latest_invoice=None,
                trial_end=PERIOD_END,
            )
        )
        assert sub.customer_id == "cus_456"
        assert sub.current_period_end == datetime.fromtimestamp(PERIOD_END + 60, tz=UTC)
        assert sub.trial_end == datetime.fromtimestamp(PERIOD_END, tz=UTC)
        assert sub.client_secret is None
        assert sub.invoice_amount_due is None

    def test_setup_intent_secret(self) -> None:
        """Test trials expose the pending setup intent secret."""
        sub = to_processor_subscription(
            stripe_subscription(
                latest_invoice=None,
                pending_setup_intent={"client_secret": "seti_secret"},
            )
        )
        assert sub.client_secret == "seti_secret"

    def test_invoice_subscription_id(self) -> None:
        """Test both invoice layouts."""
        assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
        assert (
            invoice_subscription_id(
                {"parent": {"subscription_details": {"subscription": "sub_2"}}}
            )
            == "sub_2"
        )
        assert invoice_subscription_id({"id": "in_manual"}) is None

    def test_subscription_tenant_id(self) -> None:
        """Test the tenant is read from metadata."""
        assert subscription_tenant_id(stripe_subscription()) == "salon-1"
        assert subscription_tenant_id(stripe_subscription(metadata={})) is None


class TestStripeProcessor:
    """Tests for SDK calls."""

    def test_from_settings_requires_key(self) -> None:
        """Test a missing secret key is a configuration error."""
        with pytest.raises(ConfigurationError):
            StripeProcessor.from_settings(Settings(stripe_secret_key=""))

    @pytest.mark.asyncio
    async def test_existing_customer_is_reused(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test the tenant's customer is found by metadata."""
        stripe_client.customers.search.return_value = {"data": [{"id": "cus_existing"}]}

        customer_id = await stripe_processor.get_or_create_customer(
            "salon-1", "owner@salon.example", idempotency_key="k"
        )

        assert customer_id == "cus_existing"
        stripe_client.customers.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_customer_created_with_key(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test a new customer carries the tenant id and idempotency key."""
        stripe_client.customers.search.return_value = {"data": []}
        stripe_client.customers.create.return_value = {"id": "cus_new"}

        customer_id = await stripe_processor.get_or_create_customer(
            "salon-1", None, idempotency_key="salon-1:create:k:customer"
        )

        assert customer_id == "cus_new"
        kwargs = stripe_client.customers.create.call_args.kwargs
        assert kwargs["params"] == {"metadata": {"tenant_id": "salon-1"}}
        assert kwargs["options"] == {"idempotency_key": "salon-1:create:k:customer"}

    @pytest.mark.asyncio
    async def test_create_subscription_with_trial(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test trial days and metadata are sent."""
        stripe_client.subscriptions.create.return_value = stripe_subscription(status="trialing")

        sub = await stripe_processor.create_subscription(
            "cus_123",
            "price_pro_monthly",
            trial_days=14,
            metadata={"tenant_id": "salon-1"},
            idempotency_key="k",
        )

        params = stripe_client.subscriptions.create.call_args.kwargs["params"]
        assert params["trial_period_days"] == 14
        assert params["metadata"] == {"tenant_id": "salon-1"}
        assert params["items"] == [{"price": "price_pro_monthly"}]
        assert sub.status == "trialing"

    @pytest.mark.asyncio
    async def test_update_price_swaps_first_item(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test the item is updated in place with the requested proration."""
        stripe_client.subscriptions.retrieve.return_value = stripe_subscription()
        stripe_client.subscriptions.update.return_value = stripe_subscription()

        sub = await stripe_processor.update_subscription_price(
            "sub_123", "price_ent_monthly", ProrationPolicy.INVOICE_NOW, idempotency_key="k"
        )

        params = stripe_client.subscriptions.update.call_args.kwargs["params"]
        assert params["items"] == [{"id": "si_123", "price": "price_ent_monthly"}]
        assert params["proration_behavior"] == "always_invoice"
        assert sub.invoice_amount_due == Decimal("100.50")

    @pytest.mark.asyncio
    async def test_update_without_proration_reports_no_charge(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test the previous invoice is not reported as a charge."""
        stripe_client.subscriptions.retrieve.return_value = stripe_subscription()
        stripe_client.subscriptions.update.return_value = stripe_subscription()

        sub = await stripe_processor.update_subscription_price(
            "sub_123", "price_starter_monthly", ProrationPolicy.NONE, idempotency_key="k"
        )

        assert sub.invoice_amount_due is None

    @pytest.mark.asyncio
    async def test_sdk_errors_are_translated(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test SDK exceptions surface as processor errors."""
        stripe_client.subscriptions.cancel.side_effect = stripe.APIConnectionError("reset")

        with pytest.raises(ProcessorTimeoutError) as exc_info:
            await stripe_processor.cancel_subscription("sub_123", idempotency_key="k")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_manual_invoice_steps_use_derived_keys(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test every invoice step has its own idempotency key."""
        stripe_client.invoices.create.return_value = {"id": "in_1"}
        stripe_client.invoices.finalize_invoice.return_value = {
            "id": "in_1",
            "hosted_invoice_url": "https://pay.example/in_1",
            "invoice_pdf": "https://pay.example/in_1.pdf",
            "due_date": PERIOD_END,
            "amount_due": 125050,
            "status": "open",
        }

        invoice = await stripe_processor.create_and_send_invoice(
            "cus_123",
            InvoiceLineItem(amount=Decimal("1250.50"), description="Workshop"),
            30,
            idempotency_key="k",
        )

        invoice_options = stripe_client.invoices.create.call_args.kwargs["options"]
        assert invoice_options == {"idempotency_key": "k:invoice"}
        item_kwargs = stripe_client.invoice_items.create.call_args.kwargs
        assert item_kwargs["params"]["amount"] == 125050
        assert item_kwargs["options"] == {"idempotency_key": "k:item"}
        assert stripe_client.invoices.send_invoice.call_args.kwargs["options"] == {
            "idempotency_key": "k:send"
        }
        assert invoice.amount_due == Decimal("1250.50")
        assert invoice.hosted_url == "https://pay.example/in_1"

    @pytest.mark.asyncio
    async def test_setup_intent_for_sepa(
        self, stripe_processor: StripeProcessor, stripe_client: MagicMock
    ) -> None:
        """Test bank details are passed as SEPA debit data."""
        stripe_client.setup_intents.create.return_value = {
            "id": "seti_1",
            "client_secret": "seti_1_secret",
            "status": "requires_confirmation",
        }

        result = await stripe_processor.create_setup_intent(
            "cus_123",
            "sepa",
            {"iban": "DE89370400440532013000", "account_holder_name": "Luna", "email": "a@b.de"},
            idempotency_key="k",
        )

        params = stripe_client.setup_intents.create.call_args.kwargs["params"]
        assert params["payment_method_types"] == ["sepa_debit"]
        assert params["payment_method_data"]["sepa_debit"] == {"iban": "DE89370400440532013000"}
        assert result.setup_intent_id == "seti_1"
