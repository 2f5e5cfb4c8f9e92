from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from faker import Faker

from pqbridge import Connection, ConnectionSettings, Pool, PoolConfig
from tests.fixtures.fake_transport import TEST_DSN, FakeServer


@pytest.fixture
def faker() -> Faker:
    """Provide a Faker instance with Chinese and English locales for test data generation."""
    return Faker(["zh_TW", "en_US"])


@pytest.fixture
def fake_server() -> FakeServer:
    """In-memory server with no artificial latency."""
    return FakeServer()


@pytest.fixture
def settings() -> ConnectionSettings:
    # 以明確參數建立，避免讀取開發者本機的環境變數影響結果
    return ConnectionSettings(
        database_url=TEST_DSN,
        notify_poll_interval_seconds=0.01,
        query_timeout_seconds=None,
    )


@pytest_asyncio.fixture
async def make_connection(
    fake_server: FakeServer, settings: ConnectionSettings
) -> AsyncIterator[Callable[..., Connection]]:
    """Factory for connections bound to ``fake_server``; all are closed on teardown."""
    created: list[Connection] = []

    def factory(server: FakeServer | None = None, **overrides: object) -> Connection:
        conn_settings = settings.model_copy(update=overrides) if overrides else settings
        connection = Connection(
            settings=conn_settings,
            transport_factory=(server or fake_server).factory,
        )
        created.append(connection)
        return connection

    try:
        yield factory
    finally:
        await asyncio.gather(*(conn.close() for conn in created), return_exceptions=True)


@pytest_asyncio.fixture
async def make_pool(
    fake_server: FakeServer, settings: ConnectionSettings
) -> AsyncIterator[Callable[..., Awaitable[Pool]]]:
    """Factory for opened pools bound to ``fake_server``; all are ended on teardown."""
    created: list[Pool] = []

    async def factory(server: FakeServer | None = None, **pool_options: object) -> Pool:
        pool = Pool(
            TEST_DSN,
            PoolConfig.model_validate(pool_options),
            settings=settings,
            transport_factory=(server or fake_server).factory,
        )
        created.append(pool)
        return await pool.open()

    try:
        yield factory
    finally:
        await asyncio.gather(*(pool.end() for pool in created), return_exceptions=True)


@pytest.fixture
def live_dsn() -> str:
    """DSN of a real PostgreSQL server; skips the test when none is configured."""
    load_dotenv(override=False)
    dsn = os.getenv("DATABASE_URL")
    if not dsn:
        pytest.skip("Skipping database tests: DATABASE_URL is not set")
    return dsn
