"""
Entitlements service: subscription-based access checks over HTTP.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, Query, Request

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreaker
from shared.config import ServiceConfig, get_config
from shared.errors import TransportError
from shared.logging import set_customer_context
from shared.retry import RetryConfig

from .cache import EntitlementCache
from .fetchers import PlatformSubscriptionFetcher, SubscriptionFetcher
from .models import AccessCheckResponse, RecordResponse, WebhookAck
from .webhooks import WebhookInvalidationHandler, WebhookSignatureVerifier

SERVICE_NAME = "entitlements"
SERVICE_PORT = 8011


def build_platform_fetcher(config: ServiceConfig) -> PlatformSubscriptionFetcher:
    """Create the REST fetcher described by the configuration."""
    return PlatformSubscriptionFetcher(
        config.platform_api_url,
        config.platform_api_token,
        timeout=config.platform_request_timeout,
        page_limit=config.platform_page_limit,
        retry_config=RetryConfig(
            max_attempts=config.fetch_retry_attempts,
            base_delay=config.fetch_retry_base_delay,
            max_delay=10.0
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_timeout,
            expected_exception=TransportError,
            name="subscription_platform"
        ),
    )


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(
        self,
        fetcher: Optional[SubscriptionFetcher] = None,
        config: Optional[ServiceConfig] = None,
    ):
        config = config or get_config(SERVICE_NAME, SERVICE_PORT)
        self.fetcher = fetcher if fetcher is not None else build_platform_fetcher(config)
        self._owns_fetcher = fetcher is None

        super().__init__(SERVICE_NAME, config.port, config=config)

        self.cache = EntitlementCache(
            self.fetcher,
            ttl=self.config.cache_ttl_seconds,
            hard_ceiling=self.config.cache_hard_ceiling_seconds,
            refresh_timeout=self.config.cache_refresh_timeout_seconds,
            max_records=self.config.cache_max_records,
            metrics=self.metrics,
        )

        verifier = None
        if self.config.webhook_secret:
            verifier = WebhookSignatureVerifier(
                self.config.webhook_secret,
                tolerance_seconds=self.config.webhook_tolerance_seconds
            )
        else:
            self.logger.warning("Webhook signature verification disabled, no secret configured")
        self.webhooks = WebhookInvalidationHandler(self.cache, verifier=verifier, metrics=self.metrics)

        self._setup_entitlements_routes()

    async def on_startup(self):
        self.cache.start_housekeeping(self.config.cache_housekeeping_interval_seconds)
        await super().on_startup()

    async def on_shutdown(self):
        await self.cache.close()
        if self._owns_fetcher:
            await self.fetcher.aclose()
        await super().on_shutdown()

    async def _check_dependencies(self) -> Dict[str, str]:
        breaker = getattr(self.fetcher, "circuit_breaker", None)
        if breaker is None:
            return {}
        return {"subscription_platform": "degraded" if breaker.is_open() else "ok"}

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Subscription Entitlements Service",
                "version": "1.0.0",
                "capabilities": ["access_checks", "caching", "webhook_invalidation"]
            }

        @self.app.get("/entitlements/stats")
        async def cache_stats() -> Dict[str, Any]:
            """Cache counters."""
            return self.cache.snapshot_stats()

        @self.app.get("/entitlements/{customer_id}/access", response_model=AccessCheckResponse)
        async def check_access(
            customer_id: str,
            product_id: str = Query(..., min_length=1, description="Product that must be subscribed")
        ):
            """Check whether a customer holds an active subscription to a product."""
            set_customer_context(customer_id, product_id)
            decision = await self.cache.check_access(customer_id, product_id)
            return AccessCheckResponse.from_decision(decision)

        @self.app.get("/entitlements/{customer_id}", response_model=RecordResponse)
        async def get_record(customer_id: str):
            """Return the cached record without refreshing it."""
            record = self.cache.get_record(customer_id)
            if record is None:
                raise HTTPException(status_code=404, detail="No cached record")
            return RecordResponse.from_record(record, self.cache.now())

        @self.app.post("/entitlements/{customer_id}/refresh", response_model=RecordResponse)
        async def refresh(customer_id: str):
            """Force a refresh from the platform."""
            set_customer_context(customer_id)
            record = await self.cache.refresh(customer_id)
            return RecordResponse.from_record(record, self.cache.now())

        @self.app.post("/entitlements/{customer_id}/invalidate")
        async def invalidate(customer_id: str):
            """Mark a customer's record stale."""
            had_record = self.cache.invalidate(customer_id)
            return {"customer_id": customer_id, "invalidated": had_record}

        @self.app.post("/webhooks/platform", response_model=WebhookAck, status_code=202)
        async def platform_webhook(request: Request):
            """Receive platform lifecycle events."""
            body = await request.body()
            result = self.webhooks.handle(body, request.headers)
            return WebhookAck(
                event_type=result.event_type,
                customer_id=result.customer_id,
                action=result.action
            )


def create_app(fetcher: Optional[SubscriptionFetcher] = None, config: Optional[ServiceConfig] = None):
    """Create entitlements service application."""
    service = EntitlementsService(fetcher=fetcher, config=config)
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
