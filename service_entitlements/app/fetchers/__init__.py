"""Subscription fetchers: the cache's view of the remote platform."""

from .base import SubscriptionFetcher
from .platform_client import PlatformSubscriptionFetcher

__all__ = ["SubscriptionFetcher", "PlatformSubscriptionFetcher"]
