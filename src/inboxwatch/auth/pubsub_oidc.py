"""Verification of Google-signed OIDC tokens attached to Pub/Sub push deliveries.

Pub/Sub push subscriptions configured with an authenticating service account
send ``Authorization: Bearer <id_token>``. The token is accepted only when all
of the following hold:

- RS256 signature by a key in Google's published JWKS (cached, refreshed on
  TTL expiry or on an unknown ``kid``)
- ``exp`` / ``iat`` valid within the configured clock skew
- issuer is one of Google's two canonical issuer strings
- audience matches the configured URL prefix (see ``audience_matches``)
- ``email`` is the expected push signer and ``email_verified`` is true

Every failure raises ``TokenVerificationError``; a JWKS fetch failure raises
``UpstreamUnavailableError`` instead so that the broker retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import SplitResult, urlsplit

import httpx
import jwt

from inboxwatch.errors import UpstreamUnavailableError
from inboxwatch.metrics import record_token_verification

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})
ALLOWED_ALGORITHMS = ["RS256"]

_DEFAULT_PORTS = {"http": 80, "https": 443}
# Minimum spacing between forced JWKS refreshes triggered by unknown key ids.
_MIN_FORCED_REFRESH_INTERVAL_S = 30.0


class TokenVerificationError(Exception):
    """Raised when a push identity token is rejected.

    ``code`` is a short, fixed label (safe for metrics); ``reason`` is a
    human-readable description that never contains token material.
    """

    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class VerifiedClaims:
    """Claims of a token that passed every check."""

    issuer: str
    audience: tuple[str, ...]
    email: str
    email_verified: bool
    expires_at: int
    subject: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Audience policy
# ---------------------------------------------------------------------------


def _parse_url(value: str) -> SplitResult | None:
    try:
        parts = urlsplit(value)
        parts.port  # noqa: B018 - raises ValueError on a malformed port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc or not parts.hostname:
        return None
    return parts


def _origin(parts: SplitResult) -> tuple[str, str, int | None]:
    scheme = parts.scheme.lower()
    port = parts.port or _DEFAULT_PORTS.get(scheme)
    return scheme, (parts.hostname or "").lower(), port


def audience_matches(claimed: str, prefix: str) -> bool:
    """Return True when the *claimed* audience falls under *prefix*.

    Both values are compared as URLs: identical scheme, host and port
    (case-insensitive, default ports normalized) and a claimed path equal to
    the prefix path or nested below it. A claimed audience carrying a query
    string, a fragment or userinfo never matches. When either value is not an
    absolute URL the comparison falls back to a plain string prefix check.
    """
    if not claimed or not prefix:
        return False

    claimed_url = _parse_url(claimed)
    prefix_url = _parse_url(prefix)
    if claimed_url is None or prefix_url is None:
        return claimed.startswith(prefix)

    if "?" in claimed or "#" in claimed:
        return False
    if claimed_url.username is not None or claimed_url.password is not None:
        return False
    if _origin(claimed_url) != _origin(prefix_url):
        return False

    prefix_path = prefix_url.path.rstrip("/")
    if not prefix_path:
        return True
    claimed_path = claimed_url.path or "/"
    return claimed_path == prefix_path or claimed_path.startswith(prefix_path + "/")


def _audiences(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list | tuple):
        return tuple(item for item in value if isinstance(item, str))
    return ()


def _is_verified_flag(value: Any) -> bool:
    # Google emits a JSON boolean, some intermediaries re-encode it as a string.
    if value is True:
        return True
    return isinstance(value, str) and value.strip().lower() == "true"


# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------


class JwksCache:
    """Caches Google's signing keys by ``kid``.

    Keys are refetched when the TTL lapses, and at most once per
    ``_MIN_FORCED_REFRESH_INTERVAL_S`` when a token names an unknown ``kid``
    (key rotation). Concurrent refreshes are serialized by a lock.
    """

    def __init__(self, http_client: httpx.AsyncClient, url: str, ttl_s: float = 3600.0) -> None:
        self._http_client = http_client
        self._url = url
        self._ttl_s = ttl_s
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: float | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return self._fetched_at is not None and time.monotonic() - self._fetched_at < self._ttl_s

    def _may_force_refresh(self) -> bool:
        return (
            self._fetched_at is None
            or time.monotonic() - self._fetched_at >= _MIN_FORCED_REFRESH_INTERVAL_S
        )

    async def get_signing_key(self, kid: str) -> jwt.PyJWK:
        """Return the key for *kid*, refreshing the cache when needed."""
        if not self._is_fresh():
            await self._refresh(force=False)
        key = self._keys.get(kid)
        if key is None and self._may_force_refresh():
            await self._refresh(force=True)
            key = self._keys.get(kid)
        if key is None:
            raise TokenVerificationError("unknown_key", "token signed by an unknown key")
        return key

    async def _refresh(self, *, force: bool) -> None:
        async with self._lock:
            # Another task may have refreshed while this one waited.
            if not force and self._is_fresh():
                return
            if force and not self._may_force_refresh():
                return
            try:
                response = await self._http_client.get(self._url)
                response.raise_for_status()
                key_set = jwt.PyJWKSet.from_dict(response.json())
            except (httpx.HTTPError, json.JSONDecodeError, jwt.PyJWKSetError) as exc:
                logger.error("Failed to fetch signing keys from %s: %s", self._url, exc)
                raise UpstreamUnavailableError("signing keys unavailable") from exc

            self._keys = {key.key_id: key for key in key_set.keys if key.key_id}
            self._fetched_at = time.monotonic()
            logger.debug("Loaded %d signing key(s) from %s", len(self._keys), self._url)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class PubSubTokenVerifier:
    """Validates Pub/Sub push identity tokens against the policy above."""

    def __init__(self, jwks: JwksCache, *, clock_skew_s: int = 60) -> None:
        self._jwks = jwks
        self._clock_skew_s = clock_skew_s

    async def verify(
        self,
        raw_token: str,
        expected_signer_email: str | None,
        audience_prefix: str | None,
    ) -> VerifiedClaims:
        """Verify *raw_token* and return its claims.

        Raises:
            TokenVerificationError: the token must not be trusted.
            UpstreamUnavailableError: signing keys could not be fetched.
        """
        try:
            claims = await self._verify(raw_token, expected_signer_email, audience_prefix)
        except TokenVerificationError as exc:
            record_token_verification("rejected", exc.code)
            raise
        record_token_verification("accepted")
        return claims

    async def _verify(
        self,
        raw_token: str,
        expected_signer_email: str | None,
        audience_prefix: str | None,
    ) -> VerifiedClaims:
        if not raw_token:
            raise TokenVerificationError("malformed", "missing token")

        try:
            header = jwt.get_unverified_header(raw_token)
        except jwt.DecodeError as exc:
            raise TokenVerificationError("malformed", "token is not a valid JWT") from exc

        if header.get("alg") not in ALLOWED_ALGORITHMS:
            raise TokenVerificationError("algorithm", "unsupported signing algorithm")
        kid = header.get("kid")
        if not isinstance(kid, str) or not kid:
            raise TokenVerificationError("malformed", "token header has no key id")

        signing_key = await self._jwks.get_signing_key(kid)

        try:
            payload = jwt.decode(
                raw_token,
                key=signing_key.key,
                algorithms=ALLOWED_ALGORITHMS,
                leeway=self._clock_skew_s,
                options={
                    "verify_aud": False,
                    "verify_iss": False,
                    "require": ["exp", "iat", "iss", "aud"],
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenVerificationError("expired", "token expired") from exc
        except jwt.ImmatureSignatureError as exc:
            raise TokenVerificationError("not_yet_valid", "token not yet valid") from exc
        except jwt.MissingRequiredClaimError as exc:
            raise TokenVerificationError("malformed", f"missing claim: {exc.claim}") from exc
        except jwt.InvalidSignatureError as exc:
            raise TokenVerificationError("signature", "invalid token signature") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenVerificationError("invalid", "invalid token") from exc

        issuer = payload.get("iss")
        if issuer not in GOOGLE_ISSUERS:
            raise TokenVerificationError("issuer", "unexpected token issuer")

        audiences = _audiences(payload.get("aud"))
        if not audience_prefix or not any(
            audience_matches(aud, audience_prefix) for aud in audiences
        ):
            raise TokenVerificationError("audience", "token audience not accepted")

        if not expected_signer_email:
            raise TokenVerificationError("missing_signer", "no expected signer for this server")
        email = payload.get("email")
        if email != expected_signer_email:
            raise TokenVerificationError("signer", "token signed by unexpected account")
        if not _is_verified_flag(payload.get("email_verified")):
            raise TokenVerificationError("email_unverified", "signer email not verified")

        return VerifiedClaims(
            issuer=issuer,
            audience=audiences,
            email=email,
            email_verified=True,
            expires_at=int(payload["exp"]),
            subject=payload.get("sub"),
            raw=payload,
        )
