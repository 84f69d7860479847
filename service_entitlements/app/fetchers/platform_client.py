"""
REST client for the subscription platform's subscription-list endpoint.
"""

import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker
from shared.errors import AuthError, NotFoundError, RateLimitedError, TransportError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from ..models import SubscriptionSnapshot

DEFAULT_RETRY_AFTER = 60.0


def parse_retry_after(value: Optional[str], default: float = DEFAULT_RETRY_AFTER) -> float:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def snapshot_from_item(item: Dict[str, Any]) -> SubscriptionSnapshot:
    """Build a snapshot from one subscription object of the list response."""
    product_id = item.get("product_id")
    if not product_id and isinstance(item.get("product"), dict):
        product_id = item["product"].get("id")
    return SubscriptionSnapshot(
        subscription_id=str(item.get("id", "")),
        product_id=str(product_id or ""),
        status=str(item.get("status") or ""),
        cancel_at_period_end=bool(item.get("cancel_at_period_end", False)),
    )


class PlatformSubscriptionFetcher:
    """Fetches a customer's subscriptions over the platform REST API.

    Network failures and 5xx responses are retried with backoff and feed a
    circuit breaker. Auth failures, unknown customers and rate limiting are
    raised straight away for the caller to handle.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        *,
        timeout: float = 10.0,
        page_limit: int = 100,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.logger = get_logger("entitlements.platform_client")
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=TransportError,
            name="subscription_platform"
        )
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._fetch_page = retry_on_exception(
            (TransportError,), config=self.retry_config
        )(self._fetch_page_once)

    async def list_subscriptions(self, customer_id: str) -> List[SubscriptionSnapshot]:
        """List every subscription of a customer, following pagination."""
        start_time = time.monotonic()
        snapshots: List[SubscriptionSnapshot] = []
        page = 1
        max_page = 1

        while page <= max_page:
            payload = await self.circuit_breaker.call(self._fetch_page, customer_id, page)
            items = payload.get("items") or []
            snapshots.extend(snapshot_from_item(item) for item in items)
            pagination = payload.get("pagination") or {}
            max_page = int(pagination.get("max_page") or page)
            page += 1

        self.logger.debug(
            "Fetched subscriptions",
            customer_id=customer_id,
            count=len(snapshots),
            pages=max_page,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2)
        )
        return snapshots

    async def _fetch_page_once(self, customer_id: str, page: int) -> Dict[str, Any]:
        params = {"customer_id": customer_id, "page": page, "limit": self.page_limit}
        try:
            response = await self._client.get("/v1/subscriptions/", params=params)
        except httpx.HTTPError as e:
            self.logger.warning("Platform request failed", customer_id=customer_id, error=str(e))
            raise TransportError(
                f"Platform request failed: {e.__class__.__name__}",
                details={"error": str(e)}
            ) from e

        return self._handle_response(response, customer_id)

    def _handle_response(self, response: httpx.Response, customer_id: str) -> Dict[str, Any]:
        status_code = response.status_code
        details = {"status_code": status_code, "customer_id": customer_id}

        if status_code in (401, 403):
            self.logger.error("Platform rejected credentials", status_code=status_code)
            raise AuthError(details=details)
        if status_code == 404:
            raise NotFoundError(f"Customer {customer_id} not found", details=details)
        if status_code == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            self.logger.warning("Platform rate limit hit", customer_id=customer_id, retry_after=retry_after)
            raise RateLimitedError(retry_after, details=details)
        if status_code >= 400:
            raise TransportError(f"Platform returned HTTP {status_code}", details=details)

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Platform returned a malformed body", details=details) from e
        if not isinstance(data, dict):
            raise TransportError("Platform returned a malformed body", details=details)
        return data

    async def aclose(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
