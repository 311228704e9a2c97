"""Authentication of inbound push deliveries."""

from inboxwatch.auth.pubsub_oidc import (
    JwksCache,
    PubSubTokenVerifier,
    TokenVerificationError,
    VerifiedClaims,
    audience_matches,
)

__all__ = [
    "JwksCache",
    "PubSubTokenVerifier",
    "TokenVerificationError",
    "VerifiedClaims",
    "audience_matches",
]
