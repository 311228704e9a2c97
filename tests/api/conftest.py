"""Fixtures for HTTP-level tests: the app wired to in-memory KV and a Google stub."""

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from inboxwatch.api.app import create_app
from inboxwatch.config import ServiceConfig
from inboxwatch.storage.kv import InMemoryKeyValueStore


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore({"cursor:serverA": "100"})


@pytest.fixture
def app(
    config: ServiceConfig,
    kv: InMemoryKeyValueStore,
    http_client: httpx.AsyncClient,
) -> FastAPI:
    return create_app(config, kv=kv, http_client=http_client)


@pytest.fixture
async def client(app: FastAPI):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as client:
        yield client
