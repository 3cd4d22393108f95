from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from sqla_eagerloads import Registry, Session, SQLAlchemyExecutor, cache_clear, get_registry

from .dataset import rows_by_table
from .executors import InMemoryExecutor
from .models import Base, metadata


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["postgres", "sqlite"],
        help="Database backend to run the integration cases against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(scope="session")
def registry() -> Registry:
    return get_registry(Base)


# In-memory executor


@pytest.fixture
def executor() -> InMemoryExecutor:
    return InMemoryExecutor(rows_by_table())


@pytest.fixture
def session(executor: InMemoryExecutor, registry: Registry) -> Session:
    return Session(executor, registry)


# Database backed


@pytest.fixture(scope="session")
def db_config(db_backend: str, tmp_path_factory: pytest.TempPathFactory) -> Iterator[str]:
    match db_backend:
        case "postgres":
            from testcontainers.postgres import PostgresContainer

            pg = PostgresContainer(image="postgres:latest")
            if os.name == "nt":
                pg.get_container_host_ip = lambda: "127.0.0.1"
            with pg:
                host = pg.get_container_host_ip()
                dsn = (
                    f"postgresql+asyncpg://{pg.username}:{pg.password}"
                    f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
                )
                yield dsn

        case "sqlite":
            tmp = tmp_path_factory.mktemp("db")
            yield f"sqlite+aiosqlite:///{tmp}/test.db"


@pytest.fixture(scope="session")
def engine(db_config: str) -> AsyncEngine:
    return create_async_engine(db_config, echo=False)


@pytest.fixture(scope="session")
async def _create_tables(engine: AsyncEngine) -> AsyncIterator[None]:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest.fixture
async def connection(
    engine: AsyncEngine, _create_tables: None
) -> AsyncIterator[AsyncConnection]:
    async with engine.connect() as conn:
        trans = await conn.begin()
        yield conn
        await trans.rollback()


@pytest.fixture
async def seed_data(connection: AsyncConnection) -> dict[str, list[dict[str, Any]]]:
    rows = rows_by_table()
    for table in metadata.sorted_tables:
        await connection.execute(table.insert(), rows[table.name])

    return rows


@pytest.fixture
def query_log(engine: AsyncEngine, seed_data: dict[str, list[dict[str, Any]]]) -> Iterator[list[str]]:
    """Statements executed after the seed rows were inserted."""
    statements: list[str] = []

    def _record(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
        statements.append(statement)

    sa.event.listen(engine.sync_engine, "before_cursor_execute", _record)
    yield statements
    sa.event.remove(engine.sync_engine, "before_cursor_execute", _record)


@pytest.fixture
def db_session(connection: AsyncConnection, registry: Registry, query_log: list[str]) -> Session:
    return Session(SQLAlchemyExecutor(connection), registry)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    cache_clear()
