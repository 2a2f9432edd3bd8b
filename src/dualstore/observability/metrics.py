"""Prometheus metrics for the data-access layer: queries, pool, search, health."""

import logging
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Prometheus metrics collector for dualstore.

    Each collector owns its own registry so several managers (or test
    cases) can coexist in one process without duplicate-metric errors.
    """

    def __init__(self, service_name: str = "dualstore", registry: CollectorRegistry | None = None) -> None:
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: dict[str, Any] = {}
        self._init_standard_metrics()
        logger.info("MetricsCollector initialized")

    def _init_standard_metrics(self) -> None:
        r = self.registry
        self._metrics["service_info"] = Info("dualstore_service", "Service information", registry=r)
        self._metrics["queries_total"] = Counter(
            "dualstore_queries_total", "Total statements executed", ["backend", "operation", "status"],
            registry=r,
        )
        self._metrics["query_duration_seconds"] = Histogram(
            "dualstore_query_duration_seconds", "Statement duration", ["backend", "operation"],
            registry=r,
        )
        self._metrics["slow_queries_total"] = Counter(
            "dualstore_slow_queries_total", "Statements over the slow-query threshold", ["backend"],
            registry=r,
        )
        self._metrics["pool_connections"] = Gauge(
            "dualstore_pool_connections", "Pooled connections by state", ["state"], registry=r,
        )
        self._metrics["index_operations_total"] = Counter(
            "dualstore_index_operations_total", "Search index operations", ["collection", "operation", "outcome"],
            registry=r,
        )
        self._metrics["health_status"] = Gauge(
            "dualstore_health_status", "1 when the named check is healthy", ["check"], registry=r,
        )
        self._metrics["migrations_applied_total"] = Counter(
            "dualstore_migrations_applied_total", "Migrations applied by this process", registry=r,
        )

    def set_service_info(self, version: str, backend: str) -> None:
        self._metrics["service_info"].info({"service": self.service_name, "version": version, "backend": backend})

    def record_query(self, backend: str, operation: str, duration: float, *, error: bool = False, slow: bool = False) -> None:
        status = "error" if error else "ok"
        self._metrics["queries_total"].labels(backend=backend, operation=operation, status=status).inc()
        self._metrics["query_duration_seconds"].labels(backend=backend, operation=operation).observe(duration)
        if slow:
            self._metrics["slow_queries_total"].labels(backend=backend).inc()

    def update_pool_stats(self, active: int, idle: int) -> None:
        self._metrics["pool_connections"].labels(state="active").set(active)
        self._metrics["pool_connections"].labels(state="idle").set(idle)

    def record_index_operation(self, collection: str, operation: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        self._metrics["index_operations_total"].labels(
            collection=collection, operation=operation, outcome=outcome
        ).inc()

    def set_health(self, check: str, healthy: bool) -> None:
        self._metrics["health_status"].labels(check=check).set(1 if healthy else 0)

    def record_migrations(self, count: int) -> None:
        if count:
            self._metrics["migrations_applied_total"].inc(count)

    def get_metrics(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
