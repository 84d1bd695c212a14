"""Exception hierarchy for the billing engine.

Every error carries a machine-readable code, the HTTP status the API maps it
to, a details dict for debugging and a user message that is safe to show.
Processor failures never expose raw processor payloads through
``user_message``.
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "SB1000"
    UNKNOWN_ERROR = "SB1001"
    CONFIGURATION_ERROR = "SB1002"

    # Tenant identity (2xxx)
    TENANT_REQUIRED = "SB2000"

    # Entitlement denials (3xxx)
    ENTITLEMENT_DENIED = "SB3000"
    SUBSCRIPTION_INACTIVE = "SB3001"
    FEATURE_NOT_AVAILABLE = "SB3002"
    INSUFFICIENT_TIER = "SB3003"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "SB4000"
    INVALID_INPUT = "SB4001"
    INVALID_TIER = "SB4010"
    INVALID_BILLING_CYCLE = "SB4011"
    INVALID_AMOUNT = "SB4012"
    INVALID_PAYMENT_METHOD = "SB4013"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "SB5000"
    SUBSCRIPTION_NOT_FOUND = "SB5001"

    # State-transition errors (6xxx)
    INVALID_TRANSITION = "SB6000"
    INVALID_UPGRADE = "SB6001"
    INVALID_DOWNGRADE = "SB6002"
    NOT_ON_TRIAL = "SB6003"
    SUBSCRIPTION_CANCELED = "SB6004"
    NO_SCHEDULED_CHANGE = "SB6005"
    NOT_PENDING_CANCELLATION = "SB6006"
    PAYMENT_METHOD_NOT_AVAILABLE = "SB6007"

    # Persistence errors (7xxx)
    DATABASE_ERROR = "SB7000"
    CONCURRENT_MODIFICATION = "SB7001"
    SNAPSHOT_DRIFT = "SB7002"

    # Payment processor errors (8xxx)
    PAYMENT_PROCESSOR_ERROR = "SB8000"
    PAYMENT_DECLINED = "SB8001"
    PROCESSOR_TIMEOUT = "SB8002"
    PROCESSOR_RATE_LIMITED = "SB8003"
    CIRCUIT_BREAKER_OPEN = "SB8004"
    WEBHOOK_SIGNATURE_INVALID = "SB8005"

    # Request deduplication (9xxx)
    DUPLICATE_REQUEST = "SB9000"


class SalonBillingException(Exception):
    """Root of every error the billing engine raises on purpose.

    Subclasses pin ``message``, ``error_code``, ``http_status`` and
    optionally ``user_message`` as class attributes; the constructor only
    overrides them per instance.
    """

    message: str = "Billing engine error"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    user_message: str | None = None

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        cls = type(self)
        self.message = message or cls.message
        self.error_code = error_code or cls.error_code
        self.http_status = http_status or cls.http_status
        self.details = dict(details or {})
        self.user_message = user_message or cls.user_message or self.message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, code={self.error_code.value}, "
            f"status={self.http_status.value}, details={self.details!r})"
        )


class ConfigurationError(SalonBillingException):
    """Required configuration is missing or invalid."""

    message = "Billing is misconfigured"
    error_code = ErrorCode.CONFIGURATION_ERROR
    user_message = "Billing is temporarily unavailable."


# ============================================================================
# Tenant / Entitlement Exceptions
# ============================================================================


class TenantRequiredError(SalonBillingException):
    """Request arrived without a tenant identity."""

    message = "Tenant identity is required"
    error_code = ErrorCode.TENANT_REQUIRED
    http_status = HTTPStatus.UNAUTHORIZED


class EntitlementDeniedError(SalonBillingException):
    """A gated route was called by a tenant that is not entitled to it.

    The gate itself returns decisions; only the HTTP layer turns a denial into
    this exception so the client receives the stable denial code together
    with the upgrade path.
    """

    message = "Access denied by subscription"
    error_code = ErrorCode.ENTITLEMENT_DENIED
    http_status = HTTPStatus.FORBIDDEN

    _codes = {
        "SUBSCRIPTION_INACTIVE": ErrorCode.SUBSCRIPTION_INACTIVE,
        "FEATURE_NOT_AVAILABLE": ErrorCode.FEATURE_NOT_AVAILABLE,
        "INSUFFICIENT_TIER": ErrorCode.INSUFFICIENT_TIER,
    }

    def __init__(
        self,
        message: str,
        *,
        code: str,
        current_tier: str | None = None,
        required_tier: str | None = None,
        upgrade_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.code = code
        details = kwargs.pop("details", {}) or {}
        details["code"] = code
        details["current_tier"] = current_tier
        if required_tier:
            details["required_tier"] = required_tier
        if upgrade_url:
            details["upgrade_url"] = upgrade_url
        super().__init__(
            message,
            error_code=self._codes.get(code, ErrorCode.ENTITLEMENT_DENIED),
            details=details,
            **kwargs,
        )


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(SalonBillingException):
    """Input rejected before any state or processor is touched.

    ``field``, ``value`` and ``constraint`` land in ``details`` so the client
    can point at the offending input.
    """

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", None) or {}
        details.update(
            {
                key: item
                for key, item in (
                    ("field", field),
                    ("value", None if value is None else str(value)),
                    ("constraint", constraint),
                )
                if item
            }
        )
        super().__init__(message, details=details, **kwargs)


class InvalidTierError(ValidationError):
    """Unknown tier slug."""

    message = "Invalid tier"
    error_code = ErrorCode.INVALID_TIER

    def __init__(self, tier: Any, *, field: str = "tier", **kwargs: Any) -> None:
        super().__init__(
            f"Unknown tier: {tier!r}",
            field=field,
            value=tier,
            constraint="one of starter, professional, enterprise",
            **kwargs,
        )


class InvalidBillingCycleError(ValidationError):
    """Unknown billing cycle."""

    message = "Invalid billing cycle"
    error_code = ErrorCode.INVALID_BILLING_CYCLE

    def __init__(self, cycle: Any, **kwargs: Any) -> None:
        super().__init__(
            f"Unknown billing cycle: {cycle!r}",
            field="billing_cycle",
            value=cycle,
            constraint="one of monthly, yearly",
            **kwargs,
        )


class InvalidAmountError(ValidationError):
    """Malformed money amount or invoice terms."""

    message = "Invalid amount"
    error_code = ErrorCode.INVALID_AMOUNT


class InvalidPaymentMethodError(ValidationError):
    """Unsupported payment method kind."""

    message = "Invalid payment method"
    error_code = ErrorCode.INVALID_PAYMENT_METHOD


# ============================================================================
# Resource Exceptions
# ============================================================================


class NotFoundError(SalonBillingException):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND


class SubscriptionNotFoundError(NotFoundError):
    """Tenant has no subscription snapshot."""

    message = "Subscription not found"
    error_code = ErrorCode.SUBSCRIPTION_NOT_FOUND
    user_message = "No subscription exists for this salon yet."

    def __init__(self, tenant_id: str, **kwargs: Any) -> None:
        super().__init__(
            f"No subscription for tenant {tenant_id}",
            details={"tenant_id": tenant_id},
            **kwargs,
        )


# ============================================================================
# State-Transition Exceptions
# ============================================================================


class InvalidTransitionError(SalonBillingException):
    """Requested lifecycle transition is not valid from the current state."""

    message = "Invalid subscription transition"
    error_code = ErrorCode.INVALID_TRANSITION
    http_status = HTTPStatus.CONFLICT

    def __init__(
        self,
        message: str | None = None,
        *,
        current_tier: str | None = None,
        requested_tier: str | None = None,
        status: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if current_tier:
            details["current_tier"] = current_tier
        if requested_tier:
            details["requested_tier"] = requested_tier
        if status:
            details["status"] = status
        super().__init__(message, details=details, **kwargs)


class InvalidUpgradeError(InvalidTransitionError):
    """Upgrade target does not rank above the current tier."""

    message = "Upgrade must move to a higher tier"
    error_code = ErrorCode.INVALID_UPGRADE


class InvalidDowngradeError(InvalidTransitionError):
    """Downgrade target does not rank below the current tier."""

    message = "Downgrade must move to a lower tier"
    error_code = ErrorCode.INVALID_DOWNGRADE


class NotOnTrialError(InvalidTransitionError):
    """Trial conversion requested for a subscription that is not trialing."""

    message = "Subscription is not on trial"
    error_code = ErrorCode.NOT_ON_TRIAL


class SubscriptionCanceledError(InvalidTransitionError):
    """Operation needs a live subscription but it was canceled."""

    message = "Subscription is canceled"
    error_code = ErrorCode.SUBSCRIPTION_CANCELED
    user_message = "This subscription has been canceled. Start a new subscription to continue."


class NoScheduledChangeError(InvalidTransitionError):
    """No deferred tier change is due for the tenant."""

    message = "No scheduled tier change is due"
    error_code = ErrorCode.NO_SCHEDULED_CHANGE


class NotPendingCancellationError(InvalidTransitionError):
    """Reactivation requested but no cancellation is pending."""

    message = "Subscription is not scheduled for cancellation"
    error_code = ErrorCode.NOT_PENDING_CANCELLATION


class FeatureNotAvailableError(InvalidTransitionError):
    """Billing option requires a higher tier (SEPA, manual invoices)."""

    message = "This billing option is not available on the current tier"
    error_code = ErrorCode.PAYMENT_METHOD_NOT_AVAILABLE
    http_status = HTTPStatus.FORBIDDEN


# ============================================================================
# Persistence Exceptions
# ============================================================================


class DatabaseError(SalonBillingException):
    """Database-related errors."""

    message = "Database error"
    error_code = ErrorCode.DATABASE_ERROR
    user_message = "A database error occurred. Please try again later."


class ConcurrentModificationError(DatabaseError):
    """Snapshot changed underneath a lifecycle operation."""

    message = "Subscription was modified concurrently"
    error_code = ErrorCode.CONCURRENT_MODIFICATION
    http_status = HTTPStatus.CONFLICT
    user_message = "Your subscription changed while this request was processed. Please retry."


class SnapshotDriftError(DatabaseError):
    """Processor committed a change that could not be recorded locally."""

    message = "Local subscription record diverged from the payment processor"
    error_code = ErrorCode.SNAPSHOT_DRIFT
    user_message = (
        "Your billing change was received but is still being confirmed. "
        "Our team has been notified."
    )


# ============================================================================
# Payment Processor Exceptions
# ============================================================================


class PaymentProcessorError(SalonBillingException):
    """Payment processor call failed.

    ``retryable`` tells the caller whether the same request (with the same
    idempotency key) may be sent again.
    """

    message = "Payment processor error"
    error_code = ErrorCode.PAYMENT_PROCESSOR_ERROR
    http_status = HTTPStatus.BAD_GATEWAY
    user_message = "The payment provider is temporarily unavailable. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool = False,
        operation: str | None = None,
        processor_code: str | None = None,
        status_code: int | None = None,
        **kwargs: Any,
    ) -> None:
        self.retryable = retryable
        self.operation = operation
        self.processor_code = processor_code
        details = kwargs.pop("details", {}) or {}
        details["retryable"] = retryable
        if operation:
            details["operation"] = operation
        if processor_code:
            details["processor_code"] = processor_code
        if status_code:
            details["processor_status"] = status_code
        super().__init__(message, details=details, **kwargs)


class PaymentDeclinedError(PaymentProcessorError):
    """The payment method was declined."""

    message = "Payment declined"
    error_code = ErrorCode.PAYMENT_DECLINED
    http_status = HTTPStatus.PAYMENT_REQUIRED
    user_message = "Your card was declined."


class ProcessorRateLimitedError(PaymentProcessorError):
    """Processor throttled the request."""

    message = "Payment processor rate limit exceeded"
    error_code = ErrorCode.PROCESSOR_RATE_LIMITED
    http_status = HTTPStatus.SERVICE_UNAVAILABLE


class ProcessorTimeoutError(PaymentProcessorError):
    """Processor did not answer in time; the outcome is unknown."""

    message = "Payment processor request timed out"
    error_code = ErrorCode.PROCESSOR_TIMEOUT
    http_status = HTTPStatus.GATEWAY_TIMEOUT
    user_message = (
        "The payment provider did not respond in time. "
        "Your subscription will be confirmed shortly; please do not resubmit."
    )


class ProcessorUnavailableError(PaymentProcessorError):
    """Circuit breaker is open for the processor."""

    message = "Payment processor temporarily disabled after repeated failures"
    error_code = ErrorCode.CIRCUIT_BREAKER_OPEN
    http_status = HTTPStatus.SERVICE_UNAVAILABLE


class WebhookSignatureError(SalonBillingException):
    """Inbound processor event failed signature verification."""

    message = "Invalid webhook signature"
    error_code = ErrorCode.WEBHOOK_SIGNATURE_INVALID
    http_status = HTTPStatus.BAD_REQUEST


# ============================================================================
# Request Deduplication
# ============================================================================


class DuplicateRequestError(SalonBillingException):
    """Another request with the same idempotency key is still running."""

    message = "A request with this idempotency key is already in progress"
    error_code = ErrorCode.DUPLICATE_REQUEST
    http_status = HTTPStatus.CONFLICT


# Errors from libraries and the runtime that may reach the API unwrapped.
_BUILTIN_STATUSES: tuple[tuple[type[BaseException], HTTPStatus], ...] = (
    (TimeoutError, HTTPStatus.GATEWAY_TIMEOUT),
    (ConnectionError, HTTPStatus.BAD_GATEWAY),
    (PermissionError, HTTPStatus.FORBIDDEN),
    (ValueError, HTTPStatus.BAD_REQUEST),
)


def get_http_status_for_exception(exc: BaseException) -> HTTPStatus:
    """Status for ``exc``; anything unrecognised is a 500."""
    if isinstance(exc, SalonBillingException):
        return exc.http_status
    return next(
        (status for kind, status in _BUILTIN_STATUSES if isinstance(exc, kind)),
        HTTPStatus.INTERNAL_SERVER_ERROR,
    )
