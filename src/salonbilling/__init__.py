"""Subscription entitlement and billing engine for multi-tenant salon booking."""

__version__ = "0.1.0"
