"""Durable poll cursor store.

The consumer receives a cursor store explicitly instead of reaching for a
global, so tests can run it against an in-memory store.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from domadao_indexer.storage.repos import CursorRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class CursorStore(Protocol):
    """Last acknowledged event id, owned by a single consumer."""

    async def get_last_acknowledged_id(self) -> int: ...

    async def set_last_acknowledged_id(self, event_id: int) -> bool: ...

    async def reset(self, event_id: int) -> None: ...


class SqlCursorStore:
    """Cursor store backed by the single-row ``poll_cursor`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_last_acknowledged_id(self) -> int:
        async with self._session_factory() as session:
            return await CursorRepository(session).get_last_acknowledged_id()

    async def set_last_acknowledged_id(self, event_id: int) -> bool:
        """Advance the cursor; moves backwards are refused.

        Returns:
            True if the cursor moved.
        """
        async with self._session_factory() as session, session.begin():
            repo = CursorRepository(session)
            current = await repo.get_last_acknowledged_id()
            if event_id <= current:
                if event_id < current:
                    logger.warning(
                        "Refusing to move cursor backwards (current=%d requested=%d)",
                        current,
                        event_id,
                    )
                return False
            await repo.set_last_acknowledged_id(event_id)
        logger.debug("Cursor advanced %d -> %d", current, event_id)
        return True

    async def reset(self, event_id: int) -> None:
        """Set the cursor to ``event_id`` unconditionally (operator rewind)."""
        if event_id < 0:
            raise ValueError("event_id must be >= 0")
        async with self._session_factory() as session, session.begin():
            await CursorRepository(session).set_last_acknowledged_id(event_id)
        logger.info("Cursor reset to %d", event_id)
