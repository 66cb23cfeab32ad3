"""
Shared fixtures.

Configuration is read at import time, so the environment is set before
anything from tixflow is imported.
"""

import os

os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_tixflow"
os.environ["PAYSTACK_PUBLIC_KEY"] = "pk_test_tixflow"
os.environ["MOCKPAY_ENABLED"] = "1"
os.environ["MOCK_WEBHOOK_URL"] = "http://testserver/payments/webhook"
os.environ["NOTIFIER_BACKEND"] = "log"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import asyncio  # noqa: E402
from collections.abc import AsyncGenerator, Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from tixflow.infra.sql import Database, make_database  # noqa: E402
from tixflow.model import Base, Stores  # noqa: E402
from tixflow.server import app  # noqa: E402

from tests.helpers import RecordingNotifier, seed  # noqa: E402


@pytest.fixture
def database_url(tmp_path) -> str:
    # a file, not :memory:, so every session sees the same database
    return f"sqlite:///{tmp_path / 'tixflow.db'}"


@pytest.fixture
async def database(database_url) -> AsyncGenerator[Database, None]:
    db = make_database(database_url)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest.fixture
async def stores(database) -> AsyncGenerator[Stores, None]:
    async with database.sessions() as session:
        yield Stores(session, database.gated)


@pytest.fixture
async def seeded(stores) -> Stores:
    await seed(stores)
    return stores


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ---
# HTTP level: the app runs on TestClient's own loop, so the database is
# seeded beforehand on a throwaway loop.
# ---
async def _seed_file(database_url: str) -> None:
    db = make_database(database_url)
    try:
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with db.sessions() as session:
            await seed(Stores(session, db.gated))
    finally:
        await db.dispose()


@pytest.fixture
def client(database_url, notifier) -> Generator[TestClient, None, None]:
    asyncio.run(_seed_file(database_url))
    app.state.database_url = database_url
    app.state.notifier = notifier
    with TestClient(app) as c:
        yield c
    app.state.database_url = None
