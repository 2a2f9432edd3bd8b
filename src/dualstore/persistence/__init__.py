"""
Persistence Layer
=================

Repositories over the active StoreAdapter, one per collection.
"""

from .base import BaseRepository
from .conversations import ConversationRepository
from .files import FileRepository
from .ledger import SharedLinkRepository, TokenRepository, TransactionRepository
from .memory import MemoryEntryRepository
from .messages import MessageRepository
from .repositories import (
    ActionRepository,
    AgentRepository,
    BalanceRepository,
    BannerRepository,
    KeyRepository,
    PermissionRepository,
    PluginAuthRepository,
    PresetRepository,
    PromptGroupRepository,
    PromptRepository,
    RoleRepository,
    SessionRepository,
    ToolRepository,
)
from .searchable import SearchableRepository
from .users import UserRepository

__all__ = [
    "ActionRepository",
    "AgentRepository",
    "BalanceRepository",
    "BannerRepository",
    "BaseRepository",
    "ConversationRepository",
    "FileRepository",
    "KeyRepository",
    "MemoryEntryRepository",
    "MessageRepository",
    "PermissionRepository",
    "PluginAuthRepository",
    "PresetRepository",
    "PromptGroupRepository",
    "PromptRepository",
    "RoleRepository",
    "SearchableRepository",
    "SessionRepository",
    "SharedLinkRepository",
    "TokenRepository",
    "ToolRepository",
    "TransactionRepository",
    "UserRepository",
]
