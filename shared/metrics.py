"""
Shared metrics configuration for the Subscription Entitlements service.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for a service.

    Each collector owns its own registry unless one is passed in, so several
    service instances (tests, embedded use) can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_entitlements_metrics()

    def _setup_entitlements_metrics(self):
        """Set up entitlement cache and webhook metrics."""
        self._metrics["entitlement_checks_total"] = Counter(
            "entitlement_checks_total",
            "Total entitlement checks",
            ["decision", "source"],
            registry=self.registry
        )

        self._metrics["entitlement_refreshes_total"] = Counter(
            "entitlement_refreshes_total",
            "Entitlement record refreshes against the platform",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["entitlement_refresh_duration_seconds"] = Histogram(
            "entitlement_refresh_duration_seconds",
            "Entitlement refresh duration in seconds",
            registry=self.registry
        )

        self._metrics["entitlement_cache_records"] = Gauge(
            "entitlement_cache_records",
            "Entitlement records currently cached",
            registry=self.registry
        )

        self._metrics["webhook_events_total"] = Counter(
            "webhook_events_total",
            "Webhook events received",
            ["action"],
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_entitlement_check(self, granted: bool, source: str):
        """Record the outcome of an access check."""
        decision = "granted" if granted else "denied"
        self._metrics["entitlement_checks_total"].labels(decision=decision, source=source).inc()

    def record_refresh(self, outcome: str, duration: float):
        """Record a refresh attempt and how long it took."""
        self._metrics["entitlement_refreshes_total"].labels(outcome=outcome).inc()
        self._metrics["entitlement_refresh_duration_seconds"].observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
