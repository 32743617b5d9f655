import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Awaitable, Callable, Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker,
    create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]
SchemaHook = Callable[[AsyncConnection], Awaitable[None]]


def _normalize_async_url(url: str) -> str:
    # plain URLs from the environment get the async driver
    for prefix, driver in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
    ):
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


@dataclass(frozen=True)
class DbSettings:
    url: str
    pool_size: Optional[int] = None
    max_overflow: int = 10
    pool_timeout: int = 30
    gate_limit: int = 10

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite+aiosqlite://")

    @classmethod
    def from_env(cls, database_url: str) -> "DbSettings":
        url = _normalize_async_url(database_url)
        if not url.startswith("postgresql+asyncpg://"):
            return cls(url=url,
                       gate_limit=int(os.getenv("DB_GATE_LIMIT", "10")))
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        return cls(
            url=url,
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            # no more sessions in flight than the pool can hand out
            gate_limit=int(os.getenv("DB_GATE_LIMIT", pool_size)),
        )


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_gate(limit: int) -> Gated:
    """A semaphore gate: ``async with gated(): ...`` holds one permit."""
    sem = asyncio.Semaphore(max(1, limit))

    def gated():
        return _gated(sem)

    return gated


def _sqlite_pragmas(dbapi_connection, _):
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.close()


def make_async_engine(database_url: str,
                      settings: Optional[DbSettings] = None):
    """Build the engine, its session factory and the request gate."""
    settings = settings or DbSettings.from_env(database_url)
    kw = dict(pool_pre_ping=True)
    if settings.pool_size is not None:
        kw.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout,
        )
    engine = create_async_engine(settings.url, **kw)
    if settings.is_sqlite:
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync, make_gate(settings.gate_limit)


async def init_schema(engine: AsyncEngine, metadata: MetaData,
                      *hooks: SchemaHook) -> None:
    """Create ORM tables, then run raw-DDL hooks, in one transaction."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        for hook in hooks:
            await hook(conn)
