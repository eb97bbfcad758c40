import os
import asyncio
from typing import AsyncContextManager, Callable, Dict, Optional

from sqlalchemy import MetaData, event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

# plain driver names -> async drivers
ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
}

SQLITE_PRAGMAS = (
    "journal_mode=WAL",
    "busy_timeout=5000",
    "synchronous=NORMAL",
)


def async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name) or default)


class DbGate:
    """Caps how many coroutines hold a database connection at once."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._sem = asyncio.Semaphore(self.limit)

    async def __aenter__(self) -> None:
        await self._sem.acquire()

    async def __aexit__(self, *exc) -> None:
        self._sem.release()

    def __call__(self) -> "DbGate":
        return self


class Database:
    """Engine, session factory and gate for one DATABASE_URL.

    `sessions()` opens an AsyncSession; `gated()` is the context manager
    every store call wraps its statements in.
    """

    def __init__(self, url: str, *, gate_limit: Optional[int] = None):
        self.url = async_url(url)
        self.backend = make_url(self.url).get_backend_name()

        options = self._engine_options()
        self.engine: AsyncEngine = create_async_engine(self.url, **options)
        if self.backend == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _apply_pragmas)

        self.sessions = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        # default: as many as the pool hands out
        self.gated: Gated = DbGate(
            gate_limit or _env_int("DB_GATE_LIMIT",
                                   options.get("pool_size", 10))
        )

    def _engine_options(self) -> Dict[str, object]:
        options: Dict[str, object] = {"pool_pre_ping": True}
        if self.backend == "postgresql":
            options.update(
                pool_size=_env_int("DB_POOL_SIZE", 10),
                max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
                pool_timeout=_env_int("DB_POOL_TIMEOUT", 30),
            )
        return options

    async def create_all(self, metadata: MetaData) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()


def _apply_pragmas(dbapi_connection, _record) -> None:
    cur = dbapi_connection.cursor()
    for pragma in SQLITE_PRAGMAS:
        cur.execute(f"PRAGMA {pragma};")
    cur.close()
