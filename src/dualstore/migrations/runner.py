"""
Schema Migration Runner
=======================

Applies ordered ``.sql`` files from a directory exactly once, tracking each
in a ``migrations`` ledger table. Every file runs inside its own
transaction together with its ledger insert, so the ledger only ever
records what actually committed. The first failure halts the run.

Rollback scripts live beside their migration as ``<name>_rollback.sql``
and are never applied as forward migrations.

    runner = SchemaMigrationRunner(pool=pool)
    result = await runner.run_migrations()
    print(result.applied)
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import asyncpg

from dualstore.core.exceptions import MigrationError, StoreConnectionError
from dualstore.core.structured_logger import get_logger

logger = logging.getLogger(__name__)
events = get_logger("SchemaMigrationRunner")

DEFAULT_MIGRATIONS_DIR = Path(__file__).parent / "postgresql"
LEDGER_TABLE = "migrations"
ROLLBACK_SUFFIX = "_rollback.sql"

_CREATE_LEDGER = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_TABLE} (
    id SERIAL PRIMARY KEY,
    filename VARCHAR(255) UNIQUE NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT NOW()
)
"""


class MigrationState(StrEnum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    MIGRATED = "migrated"


@dataclass
class MigrationResult:
    """Outcome of one run_migrations() call."""
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.applied)

    def to_dict(self) -> dict[str, Any]:
        return {'applied': self.count, 'migrations': list(self.applied)}


class SchemaMigrationRunner:
    """Ledger-tracked, transactional runner for ordered SQL files.

    Either borrows an existing asyncpg pool (the relational adapter passes
    its own at startup) or opens a small private pool from ``dsn``.
    """

    def __init__(
        self,
        pool: asyncpg.Pool | None = None,
        dsn: str | None = None,
        migrations_dir: str | Path | None = None,
    ) -> None:
        if pool is None and dsn is None:
            raise ValueError("SchemaMigrationRunner needs either a pool or a dsn")
        self._pool = pool
        self._owns_pool = pool is None
        self._dsn = dsn
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR
        self.state = MigrationState.UNINITIALIZED

    async def connect(self) -> None:
        """Open the private pool if needed and make sure the ledger exists."""
        if self.state != MigrationState.UNINITIALIZED:
            return
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(self._dsn, min_size=1, max_size=2)
            except (OSError, asyncpg.PostgresError) as exc:
                raise StoreConnectionError(f"Migration runner cannot connect: {exc}") from exc
        await self.ensure_ledger()
        self.state = MigrationState.CONNECTED

    async def close(self) -> None:
        if self._owns_pool and self._pool is not None:
            await self._pool.close()
            self._pool = None
        self.state = MigrationState.UNINITIALIZED

    async def ensure_ledger(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(_CREATE_LEDGER)

    # ---- Discovery ----

    def get_available_migrations(self) -> list[str]:
        """Sorted forward migration filenames, rollback scripts excluded."""
        if not self.migrations_dir.is_dir():
            logger.warning("Migrations directory %s does not exist", self.migrations_dir)
            return []
        return sorted(
            p.name for p in self.migrations_dir.glob("*.sql")
            if not p.name.endswith(ROLLBACK_SUFFIX)
        )

    async def get_applied_migrations(self) -> list[str]:
        await self.connect()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT filename FROM {LEDGER_TABLE} ORDER BY id")
        return [row["filename"] for row in rows]

    async def get_pending_migrations(self) -> list[str]:
        applied = set(await self.get_applied_migrations())
        return [name for name in self.get_available_migrations() if name not in applied]

    # ---- Execution ----

    async def run_migrations(self) -> MigrationResult:
        """Apply every pending migration in order.

        Raises:
            MigrationError: on the first failing file; earlier files stay
                applied and recorded.
        """
        await self.connect()
        applied = set(await self.get_applied_migrations())
        result = MigrationResult()

        for filename in self.get_available_migrations():
            if filename in applied:
                result.skipped.append(filename)
                continue
            await self._apply(filename)
            result.applied.append(filename)

        self.state = MigrationState.MIGRATED
        if result.applied:
            events.info("Migrations applied", count=result.count, migrations=result.applied)
        else:
            logger.info("Database schema is up to date")
        return result

    async def _apply(self, filename: str) -> None:
        sql = (self.migrations_dir / filename).read_text(encoding="utf-8")
        logger.info("Applying migration %s", filename)
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(
                        f"INSERT INTO {LEDGER_TABLE} (filename) VALUES ($1)", filename
                    )
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Migration %s failed: %s", filename, exc)
            raise MigrationError(
                f"Migration {filename} failed: {exc}", filename=filename,
                details={'filename': filename},
            ) from exc

    async def rollback_last_migration(self) -> str | None:
        """Undo the newest applied migration with its paired rollback script.

        Returns the rolled-back filename, or None when nothing is applied.

        Raises:
            MigrationError: when the rollback script is missing or fails
        """
        applied = await self.get_applied_migrations()
        if not applied:
            logger.info("No migrations to roll back")
            return None

        filename = applied[-1]
        rollback_path = self.migrations_dir / filename.replace(".sql", ROLLBACK_SUFFIX)
        if not rollback_path.exists():
            raise MigrationError(
                f"Rollback file not found: {rollback_path.name}", filename=filename,
                details={'expected': rollback_path.name},
            )

        sql = rollback_path.read_text(encoding="utf-8")
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(sql)
                    await conn.execute(f"DELETE FROM {LEDGER_TABLE} WHERE filename = $1", filename)
        except (asyncpg.PostgresError, OSError) as exc:
            raise MigrationError(
                f"Rollback of {filename} failed: {exc}", filename=filename
            ) from exc

        self.state = MigrationState.CONNECTED
        events.info("Migration rolled back", migration=filename)
        return filename

    # ---- Status ----

    async def get_migration_status(self) -> dict[str, Any]:
        applied = await self.get_applied_migrations()
        available = self.get_available_migrations()
        pending = [name for name in available if name not in set(applied)]
        return {
            'applied': applied,
            'pending': pending,
            'total': len(available),
            'applied_count': len(applied),
            'pending_count': len(pending),
        }

    async def is_database_ready(self) -> bool:
        """True when no forward migration is pending."""
        try:
            return not await self.get_pending_migrations()
        except (StoreConnectionError, asyncpg.PostgresError, OSError) as exc:
            logger.error("Could not determine migration status: %s", exc)
            return False
