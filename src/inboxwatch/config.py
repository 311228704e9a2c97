"""Service configuration loaded from environment variables.

Environment variables:
- GOOGLE_PROJECT_NAME (required unless PUSH_SIGNER_EMAIL is set; also names
  the Pub/Sub topic used by watch initialization)
- GOOGLE_TOKEN_AUDIENCE_PREFIX (optional; defaults to the request URL)
- PUSH_SIGNER_EMAIL (optional; fixed expected signer for every server)
- PUSH_SIGNER_EMAIL_TEMPLATE (optional, default
  ``push-invoker-{server_name}@{project}.iam.gserviceaccount.com``)
- GOOGLE_JWKS_URL (optional, default Google's OAuth2 v3 certs endpoint)
- JWKS_CACHE_TTL_S (optional, default 3600)
- TOKEN_CLOCK_SKEW_S (optional, default 60)
- GMAIL_HISTORY_MAX_PAGES (optional, default 10)
- CHECKPOINT_KEY_PREFIX (optional, default ``cursor:``)
- STALE_CURSOR_POLICY (optional, ``resync`` or ``fail``; default ``resync``)
- KV_BACKEND (optional, ``memory`` or ``postgres``; default ``memory``)
- KV_DB_NAME (optional, default ``inboxwatch``; used by the postgres backend)
- INBOXWATCH_HOST / INBOXWATCH_PORT (optional, default 0.0.0.0:40090)
- CORS_ORIGINS (optional, comma-separated; default ``*``)
- LOG_LEVEL / LOG_FORMAT (optional, default INFO / text)
"""

from __future__ import annotations

import os
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from inboxwatch.errors import ConfigurationError

DEFAULT_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
DEFAULT_SIGNER_EMAIL_TEMPLATE = "push-invoker-{server_name}@{project}.iam.gserviceaccount.com"

# Request headers carrying the tenant identity and the upstream Gmail credential.
SERVER_NAME_HEADER = "x-mcp-name"
UPSTREAM_AUTH_HEADER = "x-mcp-authorization"


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc


def _choice_from_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.environ.get(name, default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got: {value}")
    return value


class ServiceConfig(BaseModel):
    """Configuration for the push-notification webhook service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Push signer identity
    google_project_name: str | None = None
    push_signer_email: str | None = None
    push_signer_email_template: str = DEFAULT_SIGNER_EMAIL_TEMPLATE

    # Token verification
    token_audience_prefix: str | None = None
    jwks_url: str = DEFAULT_JWKS_URL
    jwks_cache_ttl_s: int = 3600
    token_clock_skew_s: int = 60

    # Sync engine
    history_max_pages: int = Field(default=10, ge=1)
    checkpoint_key_prefix: str = "cursor:"
    stale_cursor_policy: Literal["resync", "fail"] = "resync"

    # Persistence
    kv_backend: Literal["memory", "postgres"] = "memory"
    kv_db_name: str = "inboxwatch"

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 40090
    cors_origins: tuple[str, ...] = ("*",)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    def expected_signer_email(self, server_name: str | None) -> str | None:
        """Return the service account email expected to sign pushes for *server_name*.

        A fixed ``push_signer_email`` wins. Otherwise the template is filled
        from the server name and project; ``None`` means no signer can be
        derived and the delivery cannot be authenticated.
        """
        if self.push_signer_email:
            return self.push_signer_email
        if not server_name or not self.google_project_name:
            return None
        return self.push_signer_email_template.format(
            server_name=server_name, project=self.google_project_name
        )

    def watch_topic_name(self, server_name: str) -> str:
        """Pub/Sub topic that Gmail publishes to for *server_name*."""
        if not self.google_project_name:
            raise ConfigurationError("GOOGLE_PROJECT_NAME is required to start a Gmail watch")
        return f"projects/{self.google_project_name}/topics/gmail-inbox-{server_name}"

    @classmethod
    def _load_env_config(cls) -> dict[str, Any]:
        project = os.environ.get("GOOGLE_PROJECT_NAME") or None
        signer_email = os.environ.get("PUSH_SIGNER_EMAIL") or None
        if not project and not signer_email:
            raise ValueError("GOOGLE_PROJECT_NAME is required unless PUSH_SIGNER_EMAIL is set")

        cors_raw = os.environ.get("CORS_ORIGINS", "*")
        cors_origins = tuple(o.strip() for o in cors_raw.split(",") if o.strip()) or ("*",)

        return {
            "google_project_name": project,
            "push_signer_email": signer_email,
            "push_signer_email_template": os.environ.get(
                "PUSH_SIGNER_EMAIL_TEMPLATE", DEFAULT_SIGNER_EMAIL_TEMPLATE
            ),
            "token_audience_prefix": os.environ.get("GOOGLE_TOKEN_AUDIENCE_PREFIX") or None,
            "jwks_url": os.environ.get("GOOGLE_JWKS_URL", DEFAULT_JWKS_URL),
            "jwks_cache_ttl_s": _int_from_env("JWKS_CACHE_TTL_S", 3600),
            "token_clock_skew_s": _int_from_env("TOKEN_CLOCK_SKEW_S", 60),
            "history_max_pages": _int_from_env("GMAIL_HISTORY_MAX_PAGES", 10),
            "checkpoint_key_prefix": os.environ.get("CHECKPOINT_KEY_PREFIX", "cursor:"),
            "stale_cursor_policy": _choice_from_env(
                "STALE_CURSOR_POLICY", "resync", ("resync", "fail")
            ),
            "kv_backend": _choice_from_env("KV_BACKEND", "memory", ("memory", "postgres")),
            "kv_db_name": os.environ.get("KV_DB_NAME", "inboxwatch"),
            "host": os.environ.get("INBOXWATCH_HOST", "0.0.0.0"),
            "port": _int_from_env("INBOXWATCH_PORT", 40090),
            "cors_origins": cors_origins,
            "log_level": os.environ.get("LOG_LEVEL", "INFO"),
            "log_format": _choice_from_env("LOG_FORMAT", "text", ("text", "json")),
        }

    @classmethod
    def from_env(cls, **overrides: Any) -> ServiceConfig:
        """Load config from the environment, applying explicit *overrides* last."""
        config_kwargs = cls._load_env_config()
        config_kwargs.update(overrides)
        return cls(**config_kwargs)
