"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode — create_async_engine for connection pooling,
AsyncSession for per-request database access, dependency injection via FastAPI.

SQLite (aiosqlite) is the zero-setup default; Postgres (asyncpg) is the
production target. Everything that must be atomic is written as a single
conditional UPDATE/DELETE, which both backends serialize correctly.
"""

from sqlalchemy import event, insert, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tripgate.config import settings
from tripgate.db.models import AdminAssignment, Base

BOOTSTRAP_SLOT = 1


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine with backend-appropriate options."""
    if url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing fast.
        eng = create_async_engine(url, echo=echo, connect_args={"timeout": 30})

        @event.listens_for(eng.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return eng

    # Connection pool: min 5, max 20 connections.
    return create_async_engine(url, echo=echo, pool_size=5, max_overflow=15)


engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory — each request gets its own session.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields a session per request, auto-closes."""
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create tables and seed the bootstrap marker row.

    Learn: Idempotent. Postgres deployments use the Alembic migration
    instead, which seeds the same row.
    """
    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        existing = await conn.execute(
            select(AdminAssignment.slot).where(AdminAssignment.slot == BOOTSTRAP_SLOT)
        )
        if existing.first() is None:
            await conn.execute(insert(AdminAssignment).values(slot=BOOTSTRAP_SLOT))
