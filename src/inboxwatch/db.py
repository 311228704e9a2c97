"""Connection settings and pool creation for the PostgreSQL checkpoint backend.

Settings come from ``DATABASE_URL`` when set, otherwise from the individual
``POSTGRES_HOST`` / ``POSTGRES_PORT`` / ``POSTGRES_USER`` /
``POSTGRES_PASSWORD`` / ``POSTGRES_SSLMODE`` variables. The database name is
always ``KV_DB_NAME`` so that one server can host the checkpoints of several
deployments.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import parse_qs, urlparse

import asyncpg
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})


def _ssl_mode(value: str | None) -> str | None:
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return mode


class PostgresSettings(BaseModel):
    """Where the ``kv_store`` table lives and how to reach it."""

    model_config = ConfigDict(frozen=True)

    database: str
    host: str = "localhost"
    port: int = 5432
    user: str = "inboxwatch"
    password: str = "inboxwatch"
    ssl: str | None = None
    min_size: int = 1
    max_size: int = 5

    @classmethod
    def from_env(cls, database: str) -> PostgresSettings:
        url = os.environ.get("DATABASE_URL")
        if url:
            parsed = urlparse(url)
            return cls(
                database=database,
                host=parsed.hostname or "localhost",
                port=parsed.port or 5432,
                user=parsed.username or "inboxwatch",
                password=parsed.password or "inboxwatch",
                ssl=_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
            )

        port = os.environ.get("POSTGRES_PORT", "5432")
        try:
            port_number = int(port)
        except ValueError as exc:
            raise ValueError(f"POSTGRES_PORT must be an integer, got {port!r}") from exc
        return cls(
            database=database,
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=port_number,
            user=os.environ.get("POSTGRES_USER", "inboxwatch"),
            password=os.environ.get("POSTGRES_PASSWORD", "inboxwatch"),
            ssl=_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )

    def pool_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = self.model_dump(exclude={"ssl"})
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


def _lost_during_ssl_upgrade(exc: Exception) -> bool:
    # asyncpg's default sslmode=prefer drops the connection against servers
    # that refuse STARTTLS instead of falling back to plaintext.
    return isinstance(exc, ConnectionError) and "unexpected connection_lost() call" in str(exc)


async def create_pool(settings: PostgresSettings) -> asyncpg.Pool:
    """Open an asyncpg pool for *settings*.

    When no sslmode was configured and the server drops the SSL upgrade, the
    pool is retried once with ``ssl="disable"``.
    """
    kwargs = settings.pool_kwargs()
    try:
        pool = await asyncpg.create_pool(**kwargs)
    except Exception as exc:
        if settings.ssl is not None or not _lost_during_ssl_upgrade(exc):
            raise
        logger.info("PostgreSQL %s refused SSL; retrying with ssl=disable", settings.host)
        pool = await asyncpg.create_pool(**{**kwargs, "ssl": "disable"})
    logger.info(
        "Connected to PostgreSQL database %s on %s:%d",
        settings.database,
        settings.host,
        settings.port,
    )
    return pool
