"""
Cache package for the Entitlements service.

Provides the in-memory entitlement cache that gates feature access on
cached subscription state, and the single-flight helper it uses so that
concurrent checks for one customer share a single platform call.
"""

from .entitlement_cache import EntitlementCache
from .single_flight import SingleFlight

__all__ = ["EntitlementCache", "SingleFlight"]
