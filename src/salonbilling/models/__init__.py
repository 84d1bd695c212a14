"""Shared ORM base classes."""

from salonbilling.models.base import Base, TimestampMixin, UTCDateTime

__all__ = ["Base", "TimestampMixin", "UTCDateTime"]
