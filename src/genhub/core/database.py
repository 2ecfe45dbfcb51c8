"""Database engine and session factory setup."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create the async engine for the record store.

    SQLite URLs (local runs, tests) keep SQLAlchemy's default pool; server
    databases get a fixed-size pool with pre-ping.
    """
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False)

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        echo=False,  # SQL is not logged, structlog events are
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Connection URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    return async_sessionmaker(
        create_engine(db_url, pool_size),
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def create_schema(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Create all tables registered on SQLModel metadata.

    Production schemas are managed by Alembic; this is used for SQLite
    databases in tests and local development.
    """
    import genhub.models  # noqa: F401  (registers tables on the metadata)

    engine = session_factory.kw["bind"]
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
