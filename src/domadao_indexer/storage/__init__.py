"""Storage layer - Database schemas and repositories."""

from domadao_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from domadao_indexer.storage.models import (
    Base,
    PollCursorModel,
    PollEventModel,
    PoolModel,
    PoolStatus,
    ProcessingStatus,
)
from domadao_indexer.storage.repos import (
    CursorRepository,
    EventStats,
    PollEventDTO,
    PollEventFilters,
    PollEventRepository,
    PoolDTO,
    PoolRepository,
)

__all__ = [
    "Base",
    "CursorRepository",
    "DatabaseManager",
    "EventStats",
    "PollCursorModel",
    "PollEventDTO",
    "PollEventFilters",
    "PollEventModel",
    "PollEventRepository",
    "PoolDTO",
    "PoolModel",
    "PoolRepository",
    "PoolStatus",
    "ProcessingStatus",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
