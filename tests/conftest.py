import os
from contextlib import AsyncExitStack

import pytest

# settings are read at import time
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PAYMENT_PROVIDER", "mock")
os.environ.setdefault("MOCK_WEBHOOK_URL", "")

from qr2buy import settings  # noqa: E402
from qr2buy.infra.sql import Database  # noqa: E402
from qr2buy.model.db import Base  # noqa: E402
from qr2buy.model.store import EntityStore  # noqa: E402

ADMIN = ("admin", "s3cret")
BASE_URL = "https://shop.example"
MOCK_SECRET = "whsec_test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def db_parts(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'store.db'}")
    await database.create_all(Base.metadata)
    yield database.engine, database.sessions, database.gated
    await database.dispose()


@pytest.fixture
async def store(db_parts):
    _, SessionAsync, gated = db_parts
    async with SessionAsync() as db:
        yield EntityStore(db=db, gated=gated)


@pytest.fixture
async def make_store(db_parts):
    """Factory for extra stores, each on its own session."""
    _, SessionAsync, gated = db_parts
    async with AsyncExitStack() as stack:
        async def _make():
            db = await stack.enter_async_context(SessionAsync())
            return EntityStore(db=db, gated=gated)
        yield _make


@pytest.fixture
def app_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL",
                        f"sqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setattr(settings, "PAYMENT_PROVIDER", "mock")
    monkeypatch.setattr(settings, "MOCK_SECRET", MOCK_SECRET)
    monkeypatch.setattr(settings, "MOCK_WEBHOOK_URL", "")
    monkeypatch.setattr(settings, "PUBLIC_BASE_URL", BASE_URL)
    monkeypatch.setattr(settings, "ADMIN_USERNAME", ADMIN[0])
    monkeypatch.setattr(settings, "ADMIN_PASSWORD", ADMIN[1])
    monkeypatch.setattr(settings, "IS_PRODUCTION", False)
    return settings


@pytest.fixture
def client(app_settings):
    from fastapi.testclient import TestClient
    from qr2buy.server import app

    with TestClient(app) as c:
        yield c
