"""
Database Manager
================

Owns the active StoreAdapter and the repositories built on it.

Constructed explicitly at process bootstrap and passed to whoever needs
repositories; tests inject an adapter (and optionally an indexer) instead
of connecting to a real backend.

    manager = DatabaseManager(load_settings())
    await manager.initialize()
    users = manager.get_repository("user")
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from dualstore.adapters.base import StoreAdapter
from dualstore.adapters.naming import validate_naming
from dualstore.adapters.registry import create_adapter
from dualstore.config.settings import Settings
from dualstore.core.exceptions import NotInitializedError, RepositoryNotFoundError
from dualstore.core.structured_logger import get_logger
from dualstore.observability.metrics import MetricsCollector
from dualstore.persistence import (
    ActionRepository,
    AgentRepository,
    BalanceRepository,
    BannerRepository,
    BaseRepository,
    ConversationRepository,
    FileRepository,
    KeyRepository,
    MemoryEntryRepository,
    MessageRepository,
    PermissionRepository,
    PluginAuthRepository,
    PresetRepository,
    PromptGroupRepository,
    PromptRepository,
    RoleRepository,
    SearchableRepository,
    SessionRepository,
    SharedLinkRepository,
    TokenRepository,
    ToolRepository,
    TransactionRepository,
    UserRepository,
)
from dualstore.search.indexer import SearchIndexer

logger = get_logger("DatabaseManager")

T = TypeVar("T")

REPOSITORY_CLASSES: dict[str, type[BaseRepository]] = {
    "user": UserRepository,
    "message": MessageRepository,
    "conversation": ConversationRepository,
    "agent": AgentRepository,
    "file": FileRepository,
    "preset": PresetRepository,
    "session": SessionRepository,
    "balance": BalanceRepository,
    "pluginAuth": PluginAuthRepository,
    "key": KeyRepository,
    "role": RoleRepository,
    "permission": PermissionRepository,
    "tool": ToolRepository,
    "action": ActionRepository,
    "prompt": PromptRepository,
    "token": TokenRepository,
    "transaction": TransactionRepository,
    "sharedLink": SharedLinkRepository,
    "banner": BannerRepository,
    "memoryEntry": MemoryEntryRepository,
    "promptGroup": PromptGroupRepository,
}


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


class DatabaseManager:
    """Selects, connects and owns the adapter; builds every repository."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        adapter: StoreAdapter | None = None,
        indexer: SearchIndexer | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.metrics = metrics
        self._adapter = adapter
        self._indexer = indexer
        self._repositories: dict[str, BaseRepository] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Connect the configured backend and build repositories. Idempotent."""
        if self._initialized:
            logger.warning("DatabaseManager already initialized")
            return

        validate_naming(required=[cls.collection for cls in REPOSITORY_CLASSES.values()])
        if self._adapter is None:
            self._adapter = create_adapter(self.settings, self.metrics)
        logger.info("Initializing DatabaseManager", database_type=self._adapter.get_type())

        try:
            await self._adapter.connect()
        except Exception as e:
            logger.error("DatabaseManager initialization failed", error=str(e))
            raise

        if self._indexer is None:
            self._indexer = SearchIndexer(self._adapter, self.settings.search, metrics=self.metrics)
        if self._indexer.is_enabled():
            failed = [c for c, outcome in (await self._indexer.initialize()).items() if not outcome]
            if failed:
                logger.warning("Search index settings not applied", collections=failed)

        self._build_repositories()
        self._initialized = True
        if self.metrics:
            self.metrics.set_service_info(self.settings.version, self._adapter.get_type())
        logger.info(
            "DatabaseManager initialized",
            database_type=self._adapter.get_type(),
            repositories=len(self._repositories),
            search_enabled=self._indexer.is_enabled(),
        )

    def _build_repositories(self) -> None:
        self._repositories = {}
        for name, cls in REPOSITORY_CLASSES.items():
            if issubclass(cls, SearchableRepository):
                self._repositories[name] = cls(self._adapter, self._indexer)
            else:
                self._repositories[name] = cls(self._adapter)

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    # ---- Accessors ----

    def get_repository(self, name: str) -> Any:
        if not self._initialized:
            raise NotInitializedError(
                f"Database manager not initialized; call initialize() before requesting '{name}'. "
                f"Available repositories: {', '.join(REPOSITORY_CLASSES)}"
            )
        repository = self._repositories.get(name)
        if repository is None:
            raise RepositoryNotFoundError(name, list(self._repositories))
        return repository

    def get_repository_names(self) -> list[str]:
        return list(self._repositories)

    def get_adapter(self) -> StoreAdapter:
        self._require_initialized()
        return self._adapter

    def get_database_type(self) -> str:
        self._require_initialized()
        return self._adapter.get_type()

    def get_search_indexer(self) -> SearchIndexer | None:
        return self._indexer

    def is_connected(self) -> bool:
        return self._initialized and self._adapter is not None and self._adapter.is_connected()

    async def with_transaction(self, fn: Callable[[Any], Awaitable[T]]) -> T:
        self._require_initialized()
        return await self._adapter.with_transaction(fn)

    async def disconnect(self) -> None:
        if self._indexer is not None:
            await self._indexer.close()
        if self._adapter is not None:
            await self._adapter.disconnect()
            self._initialized = False
            logger.info("DatabaseManager disconnected")

    # ---- Health and search fan-out ----

    async def health_check(self) -> dict[str, Any]:
        if not self._initialized:
            return {'status': 'error', 'message': 'DatabaseManager not initialized', 'timestamp': _timestamp()}
        connected = self.is_connected()
        return {
            'status': 'healthy' if connected else 'unhealthy',
            'databaseType': self._adapter.get_type(),
            'isConnected': connected,
            'repositoryCount': len(self._repositories),
            'timestamp': _timestamp(),
        }

    def _searchable(self) -> dict[str, SearchableRepository]:
        self._require_initialized()
        return {n: r for n, r in self._repositories.items() if isinstance(r, SearchableRepository)}

    async def sync_search_index(self, batch_size: int = 100) -> dict[str, Any]:
        """Sync every searchable repository; one failure does not stop the rest."""
        results: dict[str, Any] = {}
        for name, repository in self._searchable().items():
            try:
                results[name] = await repository.sync_search_index(batch_size=batch_size)
            except Exception as e:
                logger.error("Search sync failed", repository=name, error=str(e))
                results[name] = {'error': str(e)}
        return results

    async def get_search_stats(self) -> dict[str, Any]:
        results: dict[str, Any] = {}
        for name, repository in self._searchable().items():
            try:
                results[name] = await repository.get_search_stats()
            except Exception as e:
                logger.error("Search stats failed", repository=name, error=str(e))
                results[name] = {'error': str(e)}
        return results
