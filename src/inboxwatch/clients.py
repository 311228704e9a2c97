"""Dynamic OAuth client registration, persisted in the key/value store.

Registrations live under ``client:<client_id>`` as JSON so that every replica
sees the same clients. A registration is created once and read back on later
lookups; it is never mutated.
"""

from __future__ import annotations

import logging
import time
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from inboxwatch.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

CLIENT_KEY_PREFIX = "client:"
DEFAULT_CLIENT_NAME = "MCP Client"
DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]


class ClientRegistrationRequest(BaseModel):
    """Body of ``POST /register``; every field is optional."""

    model_config = ConfigDict(extra="ignore")

    client_name: str | None = None
    redirect_uris: list[str] | None = None
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    scope: str | None = None


class RegisteredClient(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_id: str
    client_name: str = DEFAULT_CLIENT_NAME
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] = Field(default_factory=lambda: list(DEFAULT_GRANT_TYPES))
    response_types: list[str] = Field(default_factory=lambda: list(DEFAULT_RESPONSE_TYPES))
    scope: str | None = None
    token_endpoint_auth_method: str = "none"
    created_at: int = 0  # epoch milliseconds


class ClientRegistry:
    """Creates and looks up registered clients."""

    def __init__(self, kv: KeyValueStore, *, key_prefix: str = CLIENT_KEY_PREFIX) -> None:
        self._kv = kv
        self._key_prefix = key_prefix

    def _key(self, client_id: str) -> str:
        return f"{self._key_prefix}{client_id}"

    async def register(self, request: ClientRegistrationRequest) -> RegisteredClient:
        """Persist a new registration with a fresh ``client_id`` and return it."""
        client = RegisteredClient(
            client_id=str(uuid.uuid4()),
            client_name=request.client_name or DEFAULT_CLIENT_NAME,
            redirect_uris=request.redirect_uris or [],
            grant_types=request.grant_types or list(DEFAULT_GRANT_TYPES),
            response_types=request.response_types or list(DEFAULT_RESPONSE_TYPES),
            scope=request.scope,
            created_at=int(time.time() * 1000),
        )
        await self._kv.put(self._key(client.client_id), client.model_dump_json())
        logger.info("Registered client %s (%s)", client.client_id, client.client_name)
        return client

    async def get(self, client_id: str) -> RegisteredClient | None:
        """Return the registration for *client_id*, or ``None`` if unknown."""
        raw = await self._kv.get(self._key(client_id))
        if raw is None:
            return None
        try:
            return RegisteredClient.model_validate_json(raw)
        except ValidationError:
            logger.error("Stored registration for client %s is corrupt", client_id, exc_info=True)
            return None
