"""
Structured Event Logging
========================

JSON events for the data-access layer. Slow queries, pool statistics,
migrations and index syncs go through a StructuredLogger so each line
carries its component and fields; secrets in DSNs and auth headers are
redacted before anything is written.
"""

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

_SECRET_PATTERNS = re.compile(
    r"((?<=://)[^:/@\s]+:[^@\s]+(?=@)|"
    r"Bearer\s+[A-Za-z0-9._~+/=-]+|"
    r"(?<=password=)[^\s&]+)",
    re.IGNORECASE,
)

MAX_SQL_LOG_LENGTH = 200


def _redact_secrets(text: str) -> str:
    return _SECRET_PATTERNS.sub("[REDACTED]", text)


def truncate_sql(sql: str, limit: int = MAX_SQL_LOG_LENGTH) -> str:
    """Collapse whitespace and cut SQL text down for log output."""
    flat = " ".join(sql.split())
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "..."


class StructuredLogger:
    """
    Emits one JSON object per event on ``dualstore.<component>``:

    {"timestamp": "...", "level": "WARNING", "component": "SlowQuery",
     "message": "Slow query", "duration_ms": 1534.2, "sql": "SELECT ..."}
    """

    def __init__(self, component: str, logger: logging.Logger | None = None) -> None:
        self.component = component
        self.logger = logger or logging.getLogger(f"dualstore.{component}")

    def _emit(self, level: int, message: str, fields: dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        entry = {
            'timestamp': datetime.now(tz=UTC).isoformat(),
            'level': logging.getLevelName(level),
            'component': self.component,
            'message': message,
            **fields,
        }
        self.logger.log(level, _redact_secrets(json.dumps(entry, default=str)))

    def debug(self, message: str, **fields: Any) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._emit(logging.ERROR, message, fields)


def get_logger(component: str) -> StructuredLogger:
    return StructuredLogger(component)


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Install a root handler for CLI and standalone use."""
    if fmt == "json":
        # StructuredLogger already emits JSON; plain modules keep their text
        pattern = "%(message)s"
    else:
        pattern = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=pattern)
