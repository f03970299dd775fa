"""
Caller-aware session scope.

TRANSACTIONAL SAFETY: respects the caller's session management.
- If a session is provided: work joins it, nothing is committed/rolled back/closed here
- If session is None: a session is created, committed on success, rolled back on error
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker,
    session: Optional[AsyncSession] = None,
) -> AsyncIterator[AsyncSession]:
    if session is not None:
        yield session
        return

    async with session_factory() as own_session:
        try:
            yield own_session
            await own_session.commit()
        except Exception:
            await own_session.rollback()
            raise
