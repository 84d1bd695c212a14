"""Subscription entitlements, SMS budgets and lifecycle."""

from salonbilling.billing.entitlements import AccessDecision, DenialCode, EntitlementGate
from salonbilling.billing.lifecycle import SubscriptionLifecycle
from salonbilling.billing.models import SubscriptionSnapshot, SubscriptionStatus
from salonbilling.billing.reconciliation import SnapshotReconciler
from salonbilling.billing.sms import SmsBudgetAllocator, SmsPriority
from salonbilling.billing.tiers import (
    DEFAULT_CATALOG,
    BillingCycle,
    PaymentMethod,
    Tier,
    TierCatalog,
    TierDefinition,
)

__all__ = [
    "DEFAULT_CATALOG",
    "AccessDecision",
    "BillingCycle",
    "DenialCode",
    "EntitlementGate",
    "PaymentMethod",
    "SmsBudgetAllocator",
    "SmsPriority",
    "SnapshotReconciler",
    "SubscriptionLifecycle",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "Tier",
    "TierCatalog",
    "TierDefinition",
]
