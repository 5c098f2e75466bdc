"""
Shared metrics configuration for the Access Core.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for access core components."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Each collector owns a registry so several gates can live in one process.
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

        self._setup_cache_metrics()
        self._setup_authz_metrics()
        self._setup_lock_metrics()

    def _setup_cache_metrics(self):
        """Set up cache middleware metrics."""
        self._metrics["cache_requests_total"] = Counter(
            "cache_requests_total",
            "Cache lookups by result",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_fallback_total"] = Counter(
            "cache_fallback_total",
            "Fallback loads by outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["cache_invalidations_total"] = Counter(
            "cache_invalidations_total",
            "Cache invalidations by kind",
            ["kind"],
            registry=self.registry
        )

        self._metrics["store_errors_total"] = Counter(
            "store_errors_total",
            "Key-value store failures",
            ["operation"],
            registry=self.registry
        )

    def _setup_authz_metrics(self):
        """Set up permission evaluation metrics."""
        self._metrics["authz_decisions_total"] = Counter(
            "authz_decisions_total",
            "Authorization decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["authz_duration_seconds"] = Histogram(
            "authz_duration_seconds",
            "Authorization evaluation duration in seconds",
            registry=self.registry
        )

    def _setup_lock_metrics(self):
        """Set up lock manager metrics."""
        self._metrics["lock_operations_total"] = Counter(
            "lock_operations_total",
            "Lock operations by outcome",
            ["operation", "outcome"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)

