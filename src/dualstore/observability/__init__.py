"""
Observability Package
=====================

- metrics: Prometheus counters, histograms and gauges for the data layer
- health: periodic store/search/process checks with liveness and readiness
"""

from .health import HealthCheckResult, HealthMonitorService, HealthStatus
from .metrics import MetricsCollector

__all__ = [
    'HealthCheckResult',
    'HealthMonitorService',
    'HealthStatus',
    'MetricsCollector',
]
