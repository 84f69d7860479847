"""
Webhook receiver that turns platform lifecycle events into cache invalidations.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from shared.errors import ValidationError, WebhookSignatureError
from shared.logging import get_logger, set_customer_context, set_webhook_context
from shared.metrics import MetricsCollector

# Event families that can change what a customer is entitled to
INVALIDATING_EVENT_PREFIXES = (
    "subscription.",
    "order.",
    "payment.",
    "customer.",
    "benefit_grant.",
)
INVALIDATING_EVENT_TYPES = frozenset({"checkout.updated"})

MAX_TRACKED_DELIVERIES = 10000


class InvalidationTarget(Protocol):
    def invalidate(self, customer_id: str) -> bool:
        ...


@dataclass(frozen=True)
class WebhookResult:
    """What the receiver did with one delivery."""
    event_type: Optional[str]
    customer_id: Optional[str]
    action: str  # invalidated | no_record | ignored | duplicate | missing_customer


def is_invalidating_event(event_type: str) -> bool:
    return event_type in INVALIDATING_EVENT_TYPES or event_type.startswith(INVALIDATING_EVENT_PREFIXES)


def extract_customer_id(event_type: str, data: Dict[str, Any]) -> Optional[str]:
    """Find the customer an event is about."""
    customer_id = data.get("customer_id")
    if not customer_id and isinstance(data.get("customer"), dict):
        customer_id = data["customer"].get("id")
    if not customer_id and event_type.startswith("customer."):
        customer_id = data.get("id")
    return str(customer_id) if customer_id else None


def decode_secret(secret: str) -> bytes:
    """Signing key bytes; ``whsec_``-prefixed secrets are base64 encoded."""
    if secret.startswith("whsec_"):
        try:
            return base64.b64decode(secret[len("whsec_"):], validate=True)
        except binascii.Error as e:
            raise ValueError("webhook secret is not valid base64") from e
    return secret.encode("utf-8")


class WebhookSignatureVerifier:
    """Verifies Standard Webhooks signatures.

    The signed content is ``"{webhook-id}.{webhook-timestamp}.{body}"``,
    HMAC-SHA256 with the shared secret, base64 encoded and sent as one or more
    space separated ``v1,<signature>`` entries in ``webhook-signature``.
    """

    def __init__(self, secret: str, tolerance_seconds: int = 300, clock: Callable[[], float] = time.time):
        self._key = decode_secret(secret)
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def sign(self, webhook_id: str, timestamp: str, body: bytes) -> str:
        signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
        digest = hmac.new(self._key, signed, hashlib.sha256).digest()
        return "v1," + base64.b64encode(digest).decode("ascii")

    def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        webhook_id = headers.get("webhook-id")
        timestamp = headers.get("webhook-timestamp")
        signature_header = headers.get("webhook-signature")
        if not webhook_id or not timestamp or not signature_header:
            raise WebhookSignatureError("Missing webhook signature headers")

        try:
            sent_at = int(timestamp)
        except ValueError:
            raise WebhookSignatureError("Malformed webhook timestamp")
        if abs(self._clock() - sent_at) > self.tolerance_seconds:
            raise WebhookSignatureError(
                "Webhook timestamp outside tolerance",
                details={"tolerance_seconds": self.tolerance_seconds}
            )

        expected = self.sign(webhook_id, timestamp, body).encode("ascii")
        for candidate in signature_header.split():
            # Header values may carry arbitrary characters; compare as bytes
            if hmac.compare_digest(candidate.encode("utf-8", "surrogateescape"), expected):
                return
        raise WebhookSignatureError()


class WebhookInvalidationHandler:
    """Receives platform webhooks and invalidates the affected customer.

    Signature checking is skipped when no verifier is configured. Redeliveries
    of an already processed ``webhook-id`` are acknowledged without acting.
    """

    def __init__(
        self,
        cache: InvalidationTarget,
        verifier: Optional[WebhookSignatureVerifier] = None,
        metrics: Optional[MetricsCollector] = None,
        max_tracked_deliveries: int = MAX_TRACKED_DELIVERIES,
    ):
        self.cache = cache
        self.verifier = verifier
        self.metrics = metrics
        self.max_tracked_deliveries = max_tracked_deliveries
        self.logger = get_logger("entitlements.webhooks")
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def handle(self, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        headers = {key.lower(): value for key, value in headers.items()}
        set_webhook_context(headers.get("webhook-id"))
        if self.verifier is not None:
            self.verifier.verify(headers, body)

        webhook_id = headers.get("webhook-id")
        event = self._parse(body)
        event_type = event.get("type")
        data = event.get("data") or {}
        if not isinstance(event_type, str) or not isinstance(data, dict):
            raise ValidationError("Webhook event must carry a string 'type' and an object 'data'")

        if webhook_id and webhook_id in self._seen:
            return self._result(event_type, None, "duplicate")

        if not is_invalidating_event(event_type):
            result = self._result(event_type, None, "ignored")
        else:
            customer_id = extract_customer_id(event_type, data)
            if customer_id is None:
                self.logger.warning("Webhook event without customer", event_type=event_type)
                result = self._result(event_type, None, "missing_customer")
            else:
                set_customer_context(customer_id)
                had_record = self.cache.invalidate(customer_id)
                result = self._result(event_type, customer_id, "invalidated" if had_record else "no_record")

        if webhook_id:
            self._remember(webhook_id)
        return result

    def _parse(self, body: bytes) -> Dict[str, Any]:
        try:
            event = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON", details={"error": str(e)})
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be a JSON object")
        return event

    def _remember(self, webhook_id: str) -> None:
        self._seen[webhook_id] = None
        while len(self._seen) > self.max_tracked_deliveries:
            self._seen.popitem(last=False)

    def _result(self, event_type: Optional[str], customer_id: Optional[str], action: str) -> WebhookResult:
        if self.metrics:
            self.metrics.increment_counter("webhook_events_total", action=action)
        self.logger.info("Webhook processed", event_type=event_type, customer_id=customer_id, action=action)
        return WebhookResult(event_type=event_type, customer_id=customer_id, action=action)
