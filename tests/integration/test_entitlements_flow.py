"""
Integration tests for Entitlements service flow.

The service runs in-process against a simulated subscription platform served
through ``httpx.MockTransport``, so the real fetcher, retry, circuit breaker,
cache and webhook code paths are exercised together.
"""

import base64
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from service_entitlements.app.fetchers import PlatformSubscriptionFetcher
from service_entitlements.app.main import SERVICE_NAME, SERVICE_PORT, EntitlementsService
from service_entitlements.app.webhooks import WebhookSignatureVerifier
from shared.circuit_breaker import CircuitBreaker
from shared.config import get_config
from shared.errors import TransportError
from shared.retry import RetryConfig
from shared.test_helpers import SubscriptionFactory

SECRET = "whsec_" + base64.b64encode(b"integration-secret").decode("ascii")


class SimulatedPlatform:
    """Minimal subscription platform keyed by customer id."""

    def __init__(self):
        self.subscriptions = {}
        self.mode = "up"
        self.requests = []

    def set_status(self, customer_id, product_id, status):
        item = SubscriptionFactory.subscription_item(f"sub_{customer_id}_{product_id}", product_id, status)
        item["customer_id"] = customer_id
        self.subscriptions.setdefault(customer_id, {})[product_id] = item

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != "Bearer platform-token":
            return httpx.Response(401, json={"detail": "Unauthorized"})
        if self.mode == "down":
            return httpx.Response(503, json={"detail": "Service Unavailable"})
        if self.mode == "throttled":
            return httpx.Response(429, headers={"Retry-After": "30"})

        customer_id = request.url.params["customer_id"]
        if customer_id not in self.subscriptions:
            return httpx.Response(404, json={"detail": "Not found"})
        items = list(self.subscriptions[customer_id].values())
        return httpx.Response(200, json=SubscriptionFactory.subscription_page(items))


class TestEntitlementsFlow:
    """Integration tests for Entitlements service flow."""

    @pytest.fixture
    def platform(self):
        platform = SimulatedPlatform()
        platform.set_status("cus_1", "prod_pro", "active")
        return platform

    @pytest.fixture
    def fetcher(self, platform):
        return PlatformSubscriptionFetcher(
            "https://platform.test",
            "platform-token",
            retry_config=RetryConfig(max_attempts=2, base_delay=0, jitter=False),
            circuit_breaker=CircuitBreaker(
                failure_threshold=10,
                recovery_timeout=30.0,
                expected_exception=TransportError,
                name="subscription_platform"
            ),
            transport=httpx.MockTransport(platform),
        )

    @pytest.fixture
    def service(self, fetcher):
        config = get_config(SERVICE_NAME, SERVICE_PORT, webhook_secret=SECRET)
        return EntitlementsService(fetcher=fetcher, config=config)

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def check(self, client, customer_id="cus_1", product_id="prod_pro"):
        response = client.get(f"/entitlements/{customer_id}/access", params={"product_id": product_id})
        assert response.status_code == 200
        return response.json()

    def send_webhook(self, client, body, webhook_id):
        timestamp = str(int(time.time()))
        headers = {
            "webhook-id": webhook_id,
            "webhook-timestamp": timestamp,
            "webhook-signature": WebhookSignatureVerifier(SECRET).sign(webhook_id, timestamp, body),
        }
        return client.post("/webhooks/platform", content=body, headers=headers)

    def test_cancellation_via_webhook(self, client, platform):
        """Test that a cancellation event revokes access on the next check."""
        assert self.check(client)["granted"] is True
        assert self.check(client)["source"] == "cache"

        platform.set_status("cus_1", "prod_pro", "canceled")
        response = self.send_webhook(client, SubscriptionFactory.webhook_event("subscription.canceled"), "msg_1")
        assert response.status_code == 202
        assert response.json()["action"] == "invalidated"

        decision = self.check(client)
        assert decision["granted"] is False
        assert decision["source"] == "refresh"
        assert len(platform.requests) == 2

    def test_platform_outage_uses_fallback(self, client, platform):
        """Test that a recent record keeps answering while the platform is down."""
        assert self.check(client)["granted"] is True
        client.post("/entitlements/cus_1/invalidate")
        platform.mode = "down"

        decision = self.check(client)

        assert decision["granted"] is True
        assert decision["source"] == "fallback"
        assert decision["error_code"] == "TRANSPORT_ERROR"
        # initial fetch plus two attempts during the outage
        assert len(platform.requests) == 3

        health = client.get("/health").json()
        assert health["dependencies"]["subscription_platform"] == "ok"

    def test_outage_without_record_denies(self, client, platform):
        platform.mode = "down"

        decision = self.check(client)

        assert decision["granted"] is False
        assert decision["source"] == "denied"

    def test_throttled_platform_denies_with_hint(self, client, platform):
        platform.mode = "throttled"

        decision = self.check(client)

        assert decision["granted"] is False
        assert decision["error_code"] == "RATE_LIMITED"
        assert decision["retry_after"] == 30.0
        assert len(platform.requests) == 1

    def test_unknown_customer_denied(self, client):
        decision = self.check(client, customer_id="cus_unknown")

        assert decision["granted"] is False
        assert decision["error_code"] == "NOT_FOUND"
        assert client.get("/entitlements/cus_unknown").status_code == 404

    def test_upgrade_visible_after_refresh(self, client, platform):
        """Test that a forced refresh picks up a new product."""
        assert self.check(client, product_id="prod_team")["granted"] is False

        platform.set_status("cus_1", "prod_team", "active")
        response = client.post("/entitlements/cus_1/refresh")
        assert response.status_code == 200
        assert {s["product_id"] for s in response.json()["subscriptions"]} == {"prod_pro", "prod_team"}

        decision = self.check(client, product_id="prod_team")
        assert decision["granted"] is True
        assert decision["source"] == "cache"
