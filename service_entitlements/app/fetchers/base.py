"""
Fetcher contract used by the entitlement cache.
"""

from typing import Protocol, Sequence

from ..models import SubscriptionSnapshot


class SubscriptionFetcher(Protocol):
    """Lists a customer's subscriptions from the platform.

    Implementations raise ``TransportError``, ``AuthError``,
    ``RateLimitedError`` or ``NotFoundError`` from ``shared.errors``.
    Retries, pagination and token handling are the implementation's concern.
    """

    async def list_subscriptions(self, customer_id: str) -> Sequence[SubscriptionSnapshot]:
        ...
