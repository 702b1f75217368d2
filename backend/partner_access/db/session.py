"""
Database session management.

WHY: Each reconciler attempt and each lifecycle transition runs as one
transaction on its own session, so services receive the session factory
and open `async with factory() as session, session.begin()` per unit of work.
"""

from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from partner_access.core.config import settings
from partner_access.models import Base


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool sizing only applies to server databases; SQLite uses its own pools."""
    options: Dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    return options


engine = create_async_engine(
    settings.async_database_url,
    **_engine_options(settings.async_database_url),
)

# expire_on_commit=False keeps loaded attributes usable after commit, which the
# services rely on when building notifications after the transaction closes.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Dependency returning the session factory.

    Overridden in tests to point at an isolated database.
    """
    return AsyncSessionLocal


async def init_db(bind=None) -> None:
    """
    Create missing tables.

    Used at application startup and by tests; existing tables are left as they are.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
