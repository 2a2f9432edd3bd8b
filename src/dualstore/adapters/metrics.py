"""Rolling query-performance window for the relational adapter."""

from dataclasses import dataclass, field
from typing import Any

from dualstore.core.structured_logger import get_logger, truncate_sql

slow_log = get_logger("SlowQuery")

WINDOW_CAPACITY = 1000
WINDOW_KEEP = 500


@dataclass
class QueryMetrics:
    """Counts, errors and recent latencies since the last reset.

    The latency window holds at most WINDOW_CAPACITY samples; once it
    overflows it is cut back to the newest WINDOW_KEEP.
    """
    slow_threshold_ms: float = 1000.0
    total_queries: int = 0
    errors: int = 0
    slow_queries: int = 0
    durations_ms: list[float] = field(default_factory=list)

    def record(self, duration_ms: float, sql: str, params: list[Any] | None = None, *, error: bool = False) -> bool:
        """Record one statement; returns True when it counted as slow."""
        self.total_queries += 1
        if error:
            self.errors += 1
        self.durations_ms.append(duration_ms)
        if len(self.durations_ms) > WINDOW_CAPACITY:
            self.durations_ms = self.durations_ms[-WINDOW_KEEP:]

        if duration_ms > self.slow_threshold_ms:
            self.slow_queries += 1
            slow_log.warning(
                "Slow query detected",
                duration_ms=round(duration_ms, 2),
                threshold_ms=self.slow_threshold_ms,
                sql=truncate_sql(sql),
                params=[truncate_sql(str(p), 50) for p in (params or [])][:10],
            )
            return True
        return False

    @property
    def average_ms(self) -> float:
        if not self.durations_ms:
            return 0.0
        return sum(self.durations_ms) / len(self.durations_ms)

    def snapshot(self, active_connections: int = 0) -> dict[str, Any]:
        return {
            'active_connections': active_connections,
            'total_queries': self.total_queries,
            'average_query_time_ms': round(self.average_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'window_size': len(self.durations_ms),
        }

    def reset(self) -> None:
        """Clear the counters; the latency window is kept for averages."""
        self.total_queries = 0
        self.errors = 0
        self.slow_queries = 0
