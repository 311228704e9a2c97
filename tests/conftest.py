"""Shared fixtures: RSA signing keys, push token factory, Gmail mock transport."""

from __future__ import annotations

import base64
import json
import time
from collections.abc import Callable
from typing import Any

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from inboxwatch.config import DEFAULT_JWKS_URL, ServiceConfig
from inboxwatch.metrics import (
    checkpoint_saves_total,
    deliveries_total,
    delivery_latency_seconds,
    errors_total,
    gmail_api_calls_total,
    history_pages_total,
    messages_found_total,
    token_verifications_total,
)

KID = "test-key-1"
PROJECT = "acme-prod"
SERVER = "serverA"
SIGNER_EMAIL = f"push-invoker-{SERVER}@{PROJECT}.iam.gserviceaccount.com"
WEBHOOK_URL = "https://hooks.example.com/webhooks/email-notify"
AUDIENCE_PREFIX = "https://hooks.example.com/webhooks"


@pytest.fixture(autouse=True)
def clear_metrics() -> None:
    """Prometheus metrics are process-global; reset them between tests."""
    for collector in [
        deliveries_total,
        delivery_latency_seconds,
        token_verifications_total,
        gmail_api_calls_total,
        history_pages_total,
        messages_found_total,
        checkpoint_saves_total,
        errors_total,
    ]:
        collector._metrics.clear()


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_signing_key() -> rsa.RSAPrivateKey:
    """A key that is not published in the JWKS."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def jwks_document(private_key: rsa.RSAPrivateKey, kid: str = KID) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture
def jwks(signing_key: rsa.RSAPrivateKey) -> dict[str, Any]:
    return jwks_document(signing_key)


@pytest.fixture
def make_token(signing_key: rsa.RSAPrivateKey) -> Callable[..., str]:
    """Build an RS256 push token; pass ``claim=None`` to drop a claim."""

    def _make(
        key: rsa.RSAPrivateKey | None = None,
        kid: str | None = KID,
        **overrides: Any,
    ) -> str:
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": "https://accounts.google.com",
            "aud": WEBHOOK_URL,
            "email": SIGNER_EMAIL,
            "email_verified": True,
            "iat": now,
            "exp": now + 3600,
            "sub": "109876543210",
        }
        claims.update(overrides)
        claims = {name: value for name, value in claims.items() if value is not None}
        headers = {"kid": kid} if kid is not None else {}
        return jwt.encode(claims, key or signing_key, algorithm="RS256", headers=headers)

    return _make


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(google_project_name=PROJECT, token_audience_prefix=AUDIENCE_PREFIX)


def encode_push_data(payload: dict[str, Any], *, urlsafe: bool = False, pad: bool = True) -> str:
    raw = json.dumps(payload).encode()
    encoded = base64.urlsafe_b64encode(raw) if urlsafe else base64.b64encode(raw)
    text = encoded.decode()
    return text if pad else text.rstrip("=")


def push_body(payload: dict[str, Any] | None = None, **attributes: str) -> dict[str, Any]:
    """Pub/Sub push request body wrapping *payload* as base64 ``data``."""
    message: dict[str, Any] = {"messageId": "2070443601311540", "publishTime": "2024-01-01T00:00:00Z"}
    if payload is not None:
        message["data"] = encode_push_data(payload)
    if attributes:
        message["attributes"] = attributes
    return {"message": message, "subscription": f"projects/{PROJECT}/subscriptions/gmail"}


def json_response(status_code: int, payload: Any, url: str = "https://example.test") -> httpx.Response:
    return httpx.Response(status_code, json=payload, request=httpx.Request("GET", url))


class GoogleStub:
    """Routes mock-transport requests to canned JWKS and Gmail responses.

    ``history_pages`` maps a page token (``None`` for the first page) to a
    ``users.history.list`` response body.
    """

    def __init__(self, jwks: dict[str, Any]) -> None:
        self.jwks = jwks
        self.history_pages: dict[str | None, dict[str, Any]] = {None: {"historyId": "100"}}
        self.history_status = 200
        # Raw text served instead of JSON, e.g. an intercepting proxy page.
        self.history_text: str | None = None
        self.profile: dict[str, Any] = {"emailAddress": "a@x.com", "historyId": "900"}
        self.watch_response: dict[str, Any] = {"historyId": "500", "expiration": "1704067200000"}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url.startswith(DEFAULT_JWKS_URL):
            return httpx.Response(200, json=self.jwks)
        path = request.url.path
        if path.endswith("/users/me/history"):
            if self.history_status != 200:
                return httpx.Response(
                    self.history_status,
                    json={"error": {"code": self.history_status, "message": "Requested entity was not found."}},
                )
            if self.history_text is not None:
                return httpx.Response(
                    200, text=self.history_text, headers={"content-type": "text/html"}
                )
            token = request.url.params.get("pageToken")
            return httpx.Response(200, json=self.history_pages[token])
        if path.endswith("/users/me/profile"):
            return httpx.Response(200, json=self.profile)
        if path.endswith("/users/me/watch"):
            return httpx.Response(200, json=self.watch_response)
        return httpx.Response(404, json={"error": {"code": 404, "message": "not found"}})

    def gmail_requests(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


@pytest.fixture
def google(jwks: dict[str, Any]) -> GoogleStub:
    return GoogleStub(jwks)


@pytest.fixture
async def http_client(google: GoogleStub):
    async with httpx.AsyncClient(transport=httpx.MockTransport(google)) as client:
        yield client
