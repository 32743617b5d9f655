"""Storage behind MockPay: checkout sessions, idempotency keys, accounts.

Two interchangeable backends, picked with ``MOCKSTORE_BACKEND``: ``pg`` keeps
everything in the application's SQL database, ``redis`` in hashes and a
sorted set.
"""
import os
from typing import Callable, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import Gated
from ._postgres import MockPayStore as PgMockPayStore, create_schema
from ._redis import MockPayStore as RedisMockPayStore

BACKEND = os.getenv("MOCKSTORE_BACKEND", "pg").lower()  # 'pg' | 'redis'

MockPayStore = PgMockPayStore | RedisMockPayStore


def new_store(*, sessions: Optional[Callable[[], AsyncSession]] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 1800,
              gated: Optional[Gated] = None,
              backend: Optional[str] = None) -> MockPayStore:
    backend = (backend or BACKEND).lower()
    if backend == "pg":
        if sessions is None or gated is None:
            raise RuntimeError(
                "mock store (pg) needs sessions= and gated="
            )
        return PgMockPayStore(sessions=sessions, ttl_seconds=ttl_seconds,
                              gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("mock store (redis) needs r=redis.Redis")
        return RedisMockPayStore(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown MOCKSTORE_BACKEND: {backend!r}")


__all__ = ["MockPayStore", "new_store", "create_schema", "BACKEND"]
