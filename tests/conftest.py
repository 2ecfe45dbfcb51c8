"""pytest fixtures for genhub backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- session_factory: Function-scoped SQLite database with the schema created
- postgres_container: Session-scoped PostgreSQL testcontainer with migrations applied
- pg_session_factory / pg_uow_factory: Function-scoped PostgreSQL access with table cleanup
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- settings: Test settings (APP_ENV=test skips required-config validation)
- seed_ledger / seed_api_key: Helpers to insert ledger rows and credentials
"""

import os

os.environ.setdefault("APP_ENV", "test")

import subprocess
import sys
from decimal import Decimal
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer

from genhub.core.config import Settings
from genhub.core.database import create_schema, setup_db_session
from genhub.models.api_key import ApiKey, Provider
from genhub.models.user_credits import UserCredits
from genhub.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a fresh file-backed SQLite database per test."""
    factory = setup_db_session(f"sqlite+aiosqlite:///{tmp_path / 'genhub_test.db'}")
    await create_schema(factory)

    yield factory

    await factory.kw["bind"].dispose()


PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Child tables first
TABLES = (
    "credit_transactions",
    "image_generations",
    "video_generations",
    "user_credits",
    "api_keys",
)


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Row locks, SKIP LOCKED and exact NUMERIC arithmetic only exist on the
    production dialect. Tests using this fixture are skipped without Docker.
    Migrations run in a subprocess to stay out of the test event loop.
    """
    try:
        container = PostgresContainer(
            image="postgres:17",
            username="test",
            password="test",
            dbname="test_genhub",
        )
        container.start()
    except Exception as e:
        pytest.skip(f"PostgreSQL container unavailable: {e}")

    try:
        env = os.environ.copy()
        env["DATABASE_URL"] = container.get_connection_url(driver="psycopg")
        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=PROJECT_ROOT,
        )
        yield container
    finally:
        container.stop()


@pytest_asyncio.fixture(scope="function")
async def pg_session_factory(
    postgres_container,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a PostgreSQL session factory; tables are emptied after each test."""
    factory = setup_db_session(postgres_container.get_connection_url(driver="psycopg"), pool_size=5)

    yield factory

    async with factory() as session:
        for table in TABLES:
            await session.execute(text(f"DELETE FROM {table}"))
        await session.commit()
    await factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def pg_uow_factory(pg_session_factory):
    return create_uow_factory(pg_session_factory)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory backed by the test database."""
    return create_uow_factory(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def seed_ledger(uow_factory):
    """Insert a user_credits row and return it."""

    async def _seed(user_id: str, balance: str) -> UserCredits:
        async with await uow_factory() as uow:
            return await uow.user_credits.add(
                UserCredits(user_id=user_id, balance=Decimal(balance))
            )

    return _seed


@pytest.fixture
def seed_api_key(uow_factory):
    """Insert an api_keys row and return it."""

    async def _seed(
        credits: str,
        provider: Provider = Provider.FAL_AI,
        is_active: bool = True,
        name: str = "key",
        secret: str = "secret",
    ) -> ApiKey:
        async with await uow_factory() as uow:
            return await uow.api_keys.add(
                ApiKey(
                    name=name,
                    provider=provider.value,
                    api_key=secret,
                    credits=Decimal(credits),
                    is_active=is_active,
                )
            )

    return _seed
