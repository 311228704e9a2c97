"""Key/value storage abstraction with in-memory and PostgreSQL backends.

The store is a plain last-write-wins map: ``get`` returns the current value or
``None``, ``put`` overwrites unconditionally. There are no transactions and no
compare-and-set; concurrent writers to the same key race and the last one wins.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from inboxwatch.db import PostgresSettings, create_pool

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "kv_store"

_KV_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class KeyValueStore(Protocol):
    """Protocol for key/value storage backends."""

    async def get(self, key: str) -> str | None:
        """Return the value stored under *key*, or ``None`` when absent."""
        ...

    async def put(self, key: str, value: str) -> None:
        """Store *value* under *key*, replacing any previous value."""
        ...


class InMemoryKeyValueStore:
    """Process-local store for development and tests.

    Values do not survive a restart and are not shared between replicas.
    """

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def snapshot(self) -> dict[str, str]:
        """Return a copy of the current contents."""
        return dict(self._data)


class PostgresKeyValueStore:
    """Durable store backed by the ``kv_store`` table.

    Parameters
    ----------
    pool:
        An asyncpg connection pool. Each operation acquires a connection for
        the duration of the call, so concurrent deliveries are safe.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    @classmethod
    async def open(cls, settings: PostgresSettings) -> PostgresKeyValueStore:
        """Connect with *settings* and make sure the table exists.

        The returned store owns its pool; release it with ``close()``.
        """
        store = cls(await create_pool(settings))
        try:
            await store.ensure_schema()
        except Exception:
            await store.close()
            raise
        return store

    async def close(self) -> None:
        await self.pool.close()
        logger.info("Closed %s connection pool", _TABLE)

    async def ensure_schema(self) -> None:
        """Create the backing table if it does not exist yet."""
        async with self.pool.acquire() as conn:
            await conn.execute(_KV_TABLE_DDL)
        logger.debug("Ensured %s table exists", _TABLE)

    async def get(self, key: str) -> str | None:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(f"SELECT value FROM {_TABLE} WHERE key = $1", key)

    async def put(self, key: str, value: str) -> None:
        # INSERT … ON CONFLICT DO UPDATE keeps writes idempotent.
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (key, value, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (key) DO UPDATE
                SET value = EXCLUDED.value, updated_at = now()
                """,
                key,
                value,
            )
