"""
Shared metrics configuration for the MP Session Broker.
"""

from typing import Dict, Any, Optional
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns a registry so several service instances can coexist in one process
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
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

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "broker":
            self._setup_broker_metrics()

    def _setup_broker_metrics(self):
        """Set up broker-specific metrics."""
        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Total outbound calls to the upstream platform",
            ["action", "status_code"],
            registry=self.registry
        )

        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Upstream call duration in seconds",
            ["action"],
            registry=self.registry
        )

        self._metrics["rate_limit_wait_seconds"] = Histogram(
            "rate_limit_wait_seconds",
            "Time spent waiting in the upstream admission queue",
            registry=self.registry
        )

        self._metrics["rate_limit_queue_depth"] = Gauge(
            "rate_limit_queue_depth",
            "Callers currently waiting in the upstream admission queue",
            registry=self.registry
        )

        self._metrics["rate_limit_slowdowns_total"] = Counter(
            "rate_limit_slowdowns_total",
            "Total slowdown activations",
            registry=self.registry
        )

        self._metrics["sessions_created_total"] = Counter(
            "sessions_created_total",
            "Upstream sessions created by a completed login",
            ["persisted"],
            registry=self.registry
        )

        self._metrics["login_failures_total"] = Counter(
            "login_failures_total",
            "Login handshakes rejected",
            ["reason"],
            registry=self.registry
        )

        self._metrics["session_cache_total"] = Counter(
            "session_cache_total",
            "Session cache lookups",
            ["result"],
            registry=self.registry
        )

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

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._select(metric_name, labels)
        if metric is not None:
            metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._select(metric_name, labels)
        if metric is not None:
            metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._select(metric_name, labels)
        if metric is not None:
            metric.observe(value)

    def _select(self, metric_name: str, labels: Dict[str, Any]):
        metric = self._metrics.get(metric_name)
        if metric is None:
            return None
        if labels:
            return metric.labels(**{key: str(value) for key, value in labels.items()})
        return metric


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
