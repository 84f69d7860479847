"""Webhook receiver feeding invalidations into the entitlement cache."""

from .handler import (
    WebhookInvalidationHandler,
    WebhookResult,
    WebhookSignatureVerifier,
    extract_customer_id,
    is_invalidating_event,
)

__all__ = [
    "WebhookInvalidationHandler",
    "WebhookResult",
    "WebhookSignatureVerifier",
    "extract_customer_id",
    "is_invalidating_event",
]
