"""Shared test fixtures for the shop token store test suite."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from shop_token_store.db import Database


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each test provisions its own database with a random name, so rows and
    tables never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database and a connected Database for a single test usage.

    Tests should use this as:
        async with provisioned_database() as db:
            ...
    """
    import asyncpg

    from shop_token_store.db import Database

    host = postgres_container.get_container_host_ip()
    port = int(postgres_container.get_exposed_port(5432))
    user = postgres_container.username
    password = postgres_container.password

    @asynccontextmanager
    async def _provision(*, max_pool_size: int = 3) -> AsyncIterator[Database]:
        db_name = _unique_test_db_name()
        admin = await asyncpg.connect(
            host=host, port=port, user=user, password=password, database="postgres"
        )
        try:
            await admin.execute(f'CREATE DATABASE "{db_name}"')
        finally:
            await admin.close()

        db = Database(
            f"postgresql://{user}:{password}@{host}:{port}/{db_name}?sslmode=disable",
            max_pool_size=max_pool_size,
        )
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
