"""
Unit tests for webhook-driven invalidation.
"""

import base64

import pytest

from service_entitlements.app.webhooks import (
    WebhookInvalidationHandler,
    WebhookSignatureVerifier,
)
from service_entitlements.app.webhooks.handler import (
    decode_secret,
    extract_customer_id,
    is_invalidating_event,
)
from shared.errors import ValidationError, WebhookSignatureError
from shared.metrics import MetricsCollector
from shared.test_helpers import SubscriptionFactory

NOW = 1_700_000_000
SECRET = "whsec_" + base64.b64encode(b"super-secret-key").decode("ascii")


class RecordingCache:
    """Invalidation target that remembers what it was asked to do."""

    def __init__(self, known=("cus_1",)):
        self.known = set(known)
        self.invalidated = []

    def invalidate(self, customer_id):
        self.invalidated.append(customer_id)
        return customer_id in self.known


def signed_headers(verifier, body, webhook_id="msg_1", timestamp=NOW):
    return {
        "Webhook-Id": webhook_id,
        "Webhook-Timestamp": str(timestamp),
        "Webhook-Signature": verifier.sign(webhook_id, str(timestamp), body),
    }


class TestWebhookSignatureVerifier:
    """Test cases for WebhookSignatureVerifier."""

    @pytest.fixture
    def verifier(self):
        return WebhookSignatureVerifier(SECRET, tolerance_seconds=300, clock=lambda: NOW)

    def test_valid_signature(self, verifier):
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {k.lower(): v for k, v in signed_headers(verifier, body).items()}

        verifier.verify(headers, body)

    def test_any_of_several_signatures_accepted(self, verifier):
        """Test rotation: a header may carry several signatures."""
        body = SubscriptionFactory.webhook_event("subscription.updated")
        good = verifier.sign("msg_1", str(NOW), body)
        headers = {
            "webhook-id": "msg_1",
            "webhook-timestamp": str(NOW),
            "webhook-signature": f"v1,bm90LXRoZS1yaWdodC1vbmU= {good}",
        }

        verifier.verify(headers, body)

    def test_tampered_body_rejected(self, verifier):
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {k.lower(): v for k, v in signed_headers(verifier, body).items()}

        with pytest.raises(WebhookSignatureError):
            verifier.verify(headers, body.replace(b"cus_1", b"cus_9"))

    def test_missing_headers_rejected(self, verifier):
        with pytest.raises(WebhookSignatureError):
            verifier.verify({}, b"{}")

    @pytest.mark.parametrize("signature", ["v1,\xe9", "v1,☃☃", "\udcff"])
    def test_non_ascii_signature_rejected(self, verifier, signature):
        """Test that non-ASCII signature values fail verification cleanly."""
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {"webhook-id": "msg_1", "webhook-timestamp": str(NOW), "webhook-signature": signature}

        with pytest.raises(WebhookSignatureError):
            verifier.verify(headers, body)

    def test_malformed_timestamp_rejected(self, verifier):
        headers = {"webhook-id": "msg_1", "webhook-timestamp": "yesterday", "webhook-signature": "v1,abc"}

        with pytest.raises(WebhookSignatureError):
            verifier.verify(headers, b"{}")

    def test_old_timestamp_rejected(self, verifier):
        """Test replay protection on the timestamp."""
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {
            k.lower(): v for k, v in signed_headers(verifier, body, timestamp=NOW - 301).items()
        }

        with pytest.raises(WebhookSignatureError) as exc_info:
            verifier.verify(headers, body)
        assert exc_info.value.details["tolerance_seconds"] == 300

    def test_decode_secret(self):
        assert decode_secret(SECRET) == b"super-secret-key"
        assert decode_secret("plain") == b"plain"
        with pytest.raises(ValueError):
            decode_secret("whsec_@@@")


class TestEventClassification:
    """Test cases for event routing helpers."""

    @pytest.mark.parametrize("event_type,expected", [
        ("subscription.created", True),
        ("subscription.revoked", True),
        ("order.paid", True),
        ("customer.updated", True),
        ("benefit_grant.revoked", True),
        ("checkout.updated", True),
        ("checkout.created", False),
        ("product.updated", False),
    ])
    def test_is_invalidating_event(self, event_type, expected):
        assert is_invalidating_event(event_type) is expected

    def test_extract_customer_id(self):
        assert extract_customer_id("subscription.updated", {"customer_id": "cus_1"}) == "cus_1"
        assert extract_customer_id("order.paid", {"customer": {"id": "cus_2"}}) == "cus_2"
        assert extract_customer_id("customer.updated", {"id": "cus_3"}) == "cus_3"
        assert extract_customer_id("subscription.updated", {"id": "sub_1"}) is None


class TestWebhookInvalidationHandler:
    """Test cases for WebhookInvalidationHandler."""

    @pytest.fixture
    def cache(self):
        return RecordingCache()

    @pytest.fixture
    def verifier(self):
        return WebhookSignatureVerifier(SECRET, clock=lambda: NOW)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("entitlements")

    @pytest.fixture
    def handler(self, cache, verifier, metrics):
        return WebhookInvalidationHandler(cache, verifier=verifier, metrics=metrics)

    def test_subscription_event_invalidates_customer(self, handler, cache, verifier, metrics):
        body = SubscriptionFactory.webhook_event("subscription.canceled")

        result = handler.handle(body, signed_headers(verifier, body))

        assert result.action == "invalidated"
        assert result.customer_id == "cus_1"
        assert cache.invalidated == ["cus_1"]
        assert metrics.registry.get_sample_value(
            "webhook_events_total", {"action": "invalidated"}
        ) == 1.0

    def test_unknown_customer_reports_no_record(self, handler, cache, verifier):
        body = SubscriptionFactory.webhook_event("subscription.updated", customer_id="cus_2")

        result = handler.handle(body, signed_headers(verifier, body))

        assert result.action == "no_record"
        assert cache.invalidated == ["cus_2"]

    def test_irrelevant_event_ignored(self, handler, cache, verifier):
        body = SubscriptionFactory.webhook_event("product.updated")

        result = handler.handle(body, signed_headers(verifier, body))

        assert result.action == "ignored"
        assert cache.invalidated == []

    def test_event_without_customer(self, handler, cache, verifier):
        body = SubscriptionFactory.webhook_event("order.paid", customer_id=None)

        result = handler.handle(body, signed_headers(verifier, body))

        assert result.action == "missing_customer"
        assert cache.invalidated == []

    def test_redelivery_is_deduplicated(self, handler, cache, verifier):
        """Test that the same webhook-id is acted on only once."""
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = signed_headers(verifier, body, webhook_id="msg_42")

        first = handler.handle(body, headers)
        second = handler.handle(body, headers)

        assert first.action == "invalidated"
        assert second.action == "duplicate"
        assert cache.invalidated == ["cus_1"]

    def test_tracked_deliveries_are_bounded(self, cache):
        handler = WebhookInvalidationHandler(cache, max_tracked_deliveries=2)
        body = SubscriptionFactory.webhook_event("subscription.updated")

        for webhook_id in ("msg_1", "msg_2", "msg_3"):
            handler.handle(body, {"webhook-id": webhook_id})

        assert handler.handle(body, {"webhook-id": "msg_1"}).action == "invalidated"
        assert handler.handle(body, {"webhook-id": "msg_3"}).action == "duplicate"

    def test_bad_signature_does_not_invalidate(self, handler, cache):
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {
            "webhook-id": "msg_1",
            "webhook-timestamp": str(NOW),
            "webhook-signature": "v1,Zm9yZ2VkLXNpZ25hdHVyZQ==",
        }

        with pytest.raises(WebhookSignatureError):
            handler.handle(body, headers)
        assert cache.invalidated == []

    def test_non_ascii_signature_does_not_invalidate(self, handler, cache):
        body = SubscriptionFactory.webhook_event("subscription.updated")
        headers = {"webhook-id": "m1", "webhook-timestamp": str(NOW), "webhook-signature": "v1,\xe9"}

        with pytest.raises(WebhookSignatureError):
            handler.handle(body, headers)
        assert cache.invalidated == []

    def test_invalid_json(self, cache):
        handler = WebhookInvalidationHandler(cache)

        with pytest.raises(ValidationError):
            handler.handle(b"{not json", {})

    def test_event_shape_validated(self, cache):
        handler = WebhookInvalidationHandler(cache)

        with pytest.raises(ValidationError):
            handler.handle(b'{"type": 5, "data": {}}', {})
        with pytest.raises(ValidationError):
            handler.handle(b'["subscription.updated"]', {})
