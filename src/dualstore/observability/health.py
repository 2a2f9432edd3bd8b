"""Health monitor: periodic store, search and process checks with liveness/readiness views."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import psutil

from dualstore.config.settings import DatabaseType, HealthConfig
from dualstore.core.exceptions import NotInitializedError

from .metrics import MetricsCollector

if TYPE_CHECKING:
    from dualstore.manager import DatabaseManager

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DOWN = "down"
    WARNING = "warning"
    DISABLED = "disabled"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    status: HealthStatus
    message: str = ""
    duration_ms: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            'status': self.status.value,
            'message': self.message,
            'durationMs': round(self.duration_ms, 2),
            **self.details,
        }


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


def overall_status(database: HealthStatus, search: HealthStatus, system: HealthStatus) -> HealthStatus:
    """Fixed precedence: any error, then store down, then all healthy, else degraded."""
    if HealthStatus.ERROR in (database, search, system):
        return HealthStatus.UNHEALTHY
    if database == HealthStatus.DOWN:
        return HealthStatus.DOWN
    if database == HealthStatus.HEALTHY and system == HealthStatus.HEALTHY:
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


class HealthMonitorService:
    """
    Composes three independent checks into one snapshot:

    - database: connectivity plus backend metrics (pool and query stats
      for PostgreSQL)
    - search: engine reachability, ``disabled`` when not configured
    - system: process RSS/VMS and uptime via psutil

    No method raises; a failing check is reported as status ``error``.
    """

    def __init__(
        self,
        manager: "DatabaseManager",
        config: HealthConfig | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.manager = manager
        self.config = config or HealthConfig()
        self.metrics = metrics if metrics is not None else manager.metrics
        self._process = psutil.Process(os.getpid())
        self._task: asyncio.Task | None = None
        self._running = False
        self._status: dict[str, Any] = {
            'database': HealthStatus.UNKNOWN.value,
            'search': HealthStatus.UNKNOWN.value,
            'system': HealthStatus.UNKNOWN.value,
            'lastCheck': None,
            'duration': None,
            'checks': {'database': None, 'search': None, 'system': None},
        }

    # ---- Periodic loop ----

    async def start(self) -> None:
        if self._running:
            logger.warning("Health monitor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._monitoring_loop(), name="dualstore-health-monitor")
        logger.info("Health monitor started (interval %.0fs)", self.config.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")

    async def _monitoring_loop(self) -> None:
        await asyncio.sleep(self.config.initial_delay_seconds)
        while self._running:
            await self.perform_health_check()
            await asyncio.sleep(self.config.interval_seconds)

    # ---- Checks ----

    async def perform_health_check(self) -> dict[str, Any]:
        started = time.perf_counter()
        database = await self._guarded(self.check_database_health)
        search = await self._guarded(self.check_search_health)
        system = await self._guarded(self.check_system_health)

        self._status = {
            'database': database.status.value,
            'search': search.status.value,
            'system': system.status.value,
            'lastCheck': _now(),
            'duration': round((time.perf_counter() - started) * 1000, 2),
            'checks': {
                'database': database.to_dict(),
                'search': search.to_dict(),
                'system': system.to_dict(),
            },
        }
        overall = self.get_overall_health()
        if self.metrics:
            self.metrics.set_health("database", database.status == HealthStatus.HEALTHY)
            self.metrics.set_health("search", search.status in (HealthStatus.HEALTHY, HealthStatus.DISABLED))
            self.metrics.set_health("system", system.status == HealthStatus.HEALTHY)
            self.metrics.set_health("overall", overall == HealthStatus.HEALTHY)
        if overall != HealthStatus.HEALTHY:
            logger.warning("Health check: %s (database=%s search=%s system=%s)",
                           overall.value, database.status.value, search.status.value, system.status.value)
        return self._status

    async def _guarded(self, check) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            return await check()
        except Exception as e:
            logger.error("Health check %s failed: %s", check.__name__, e)
            return HealthCheckResult(HealthStatus.ERROR, str(e), (time.perf_counter() - started) * 1000)

    async def check_database_health(self) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            adapter = self.manager.get_adapter()
        except NotInitializedError:
            adapter = None
        if adapter is None or not adapter.is_connected():
            return HealthCheckResult(HealthStatus.DOWN, "Database not connected",
                                     (time.perf_counter() - started) * 1000)

        await adapter.ping()
        elapsed = (time.perf_counter() - started) * 1000
        details: dict[str, Any] = {'type': adapter.get_type()}
        if adapter.get_type() == DatabaseType.POSTGRESQL:
            details['metrics'] = adapter.get_performance_metrics()
            details['poolStats'] = adapter.get_pool_stats()
        return HealthCheckResult(HealthStatus.HEALTHY, "Database reachable", elapsed, details)

    async def check_search_health(self) -> HealthCheckResult:
        started = time.perf_counter()
        indexer = self.manager.get_search_indexer()
        if indexer is None or not indexer.is_enabled():
            return HealthCheckResult(HealthStatus.DISABLED, "Search indexing not configured",
                                     (time.perf_counter() - started) * 1000)
        health = await indexer.health_check()
        status = HealthStatus.HEALTHY if health.get("status") == "healthy" else HealthStatus.DEGRADED
        return HealthCheckResult(status, health.get("message", ""), (time.perf_counter() - started) * 1000,
                                 {'type': 'meilisearch'})

    async def check_system_health(self) -> HealthCheckResult:
        started = time.perf_counter()
        memory = self._process.memory_info()
        rss_mb = memory.rss / BYTES_PER_MB
        details = {
            'memory': {
                'rssMb': round(rss_mb, 1),
                'vmsMb': round(memory.vms / BYTES_PER_MB, 1),
                'percent': round(self._process.memory_percent(), 2),
            },
            'uptimeSeconds': round(time.time() - self._process.create_time(), 1),
        }
        if rss_mb > self.config.memory_warning_mb:
            return HealthCheckResult(HealthStatus.WARNING, f"RSS {rss_mb:.0f}MB above threshold",
                                     (time.perf_counter() - started) * 1000, details)
        return HealthCheckResult(HealthStatus.HEALTHY, "Process resources normal",
                                 (time.perf_counter() - started) * 1000, details)

    # ---- Views ----

    def get_overall_health(self) -> HealthStatus:
        return overall_status(
            HealthStatus(self._status['database']),
            HealthStatus(self._status['search']),
            HealthStatus(self._status['system']),
        )

    def get_health_status(self) -> dict[str, Any]:
        return self._status

    def get_health_summary(self) -> dict[str, Any]:
        return {
            'overall': self.get_overall_health().value,
            'database': self._status['database'],
            'search': self._status['search'],
            'system': self._status['system'],
            'lastCheck': self._status['lastCheck'],
            'duration': self._status['duration'],
        }

    def get_detailed_health_report(self) -> dict[str, Any]:
        return {
            **self._status,
            'overall': self.get_overall_health().value,
            'timestamp': _now(),
            'environment': self.manager.settings.environment,
            'version': self.manager.settings.version,
        }

    def is_healthy(self) -> bool:
        return self.get_overall_health() in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)

    def is_database_healthy(self) -> bool:
        return self._status['database'] == HealthStatus.HEALTHY.value

    async def check_liveness(self) -> dict[str, Any]:
        return {'status': HealthStatus.HEALTHY.value, 'message': 'Service is alive', 'timestamp': _now()}

    async def check_readiness(self) -> dict[str, Any]:
        """Ready when the store is healthy; search health does not count."""
        database = await self._guarded(self.check_database_health)
        ready = database.status == HealthStatus.HEALTHY
        return {
            'status': database.status.value,
            'ready': ready,
            'checks': {'database': database.to_dict()},
            'timestamp': _now(),
        }


async def run_health_check(manager: "DatabaseManager") -> bool:
    """CLI health check: prints one line per component, returns overall health."""
    monitor = HealthMonitorService(manager, manager.settings.health)
    status = await monitor.perform_health_check()
    for name in ("database", "search", "system"):
        check = status["checks"][name] or {}
        print(f"  [{status[name].upper()}] {name}: {check.get('message', '')}")
    overall = monitor.get_overall_health()
    print(f"  overall: {overall.value}")
    return monitor.is_healthy()
