from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.db.session import async_session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield one session per request.

    Services commit their own units of work; anything left open when the
    handler raises is rolled back here.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
