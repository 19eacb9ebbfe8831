"""
Shared metrics configuration for the admission pipeline.
"""

import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is passed in, so several
    pipelines (or tests) can coexist in one process.
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

        self._setup_admission_metrics()

    def _setup_admission_metrics(self):
        """Set up pipeline-specific metrics."""
        self._metrics["admission_decisions_total"] = Counter(
            "admission_decisions_total",
            "Rate limiter decisions",
            ["decision"],
            registry=self.registry
        )

        self._metrics["pipeline_failures_total"] = Counter(
            "pipeline_failures_total",
            "Requests that ended in an error envelope",
            ["kind"],
            registry=self.registry
        )

        self._metrics["pipeline_stage_duration_seconds"] = Histogram(
            "pipeline_stage_duration_seconds",
            "Time spent in each pipeline stage",
            ["stage"],
            registry=self.registry
        )

        self._metrics["inflight_requests"] = Gauge(
            "inflight_requests",
            "Requests currently inside the pipeline",
            registry=self.registry
        )

        self._metrics["rate_limit_buckets"] = Gauge(
            "rate_limit_buckets",
            "Live token buckets held by the in-memory limiter",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

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

    def record_decision(self, allowed: bool):
        self._metrics["admission_decisions_total"].labels(
            decision="allowed" if allowed else "rejected"
        ).inc()

    def record_failure(self, kind: str):
        """Record a request that ended in an error envelope."""
        self._metrics["pipeline_failures_total"].labels(kind=kind).inc()

    def set_inflight(self, value: int):
        self._metrics["inflight_requests"].set(value)

    def set_bucket_count(self, value: int):
        self._metrics["rate_limit_buckets"].set(value)

    @contextmanager
    def time_stage(self, stage: str):
        """Context manager to time a pipeline stage."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self._metrics["pipeline_stage_duration_seconds"].labels(stage=stage).observe(duration)

    def sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read the current value of a counter or gauge sample."""
        return self.registry.get_sample_value(metric_name, labels or None)

    def render(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
