"""
Shared utilities for the Subscription Entitlements service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator with backoff and retry-after support
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton (health, metrics, error mapping)

Do not import from service_* packages into shared/.
"""
