"""inboxwatch HTTP API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler owning the shared ``httpx.AsyncClient`` and the KV backend
- The Pub/Sub push endpoint at POST /webhooks/email-notify
- Watch initialization at POST /watch and client registration at POST /register
- Health at GET /health and Prometheus exposition at GET /metrics
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from inboxwatch import __version__
from inboxwatch.api.middleware import register_error_handlers
from inboxwatch.api.models import HealthResponse, WatchResponse
from inboxwatch.auth.pubsub_oidc import JwksCache, PubSubTokenVerifier
from inboxwatch.clients import ClientRegistrationRequest, ClientRegistry
from inboxwatch.config import SERVER_NAME_HEADER, UPSTREAM_AUTH_HEADER, ServiceConfig
from inboxwatch.db import PostgresSettings
from inboxwatch.gmail.history import GMAIL_API_BASE
from inboxwatch.gmail.watch import initialize_watch
from inboxwatch.storage.checkpoints import CheckpointStore
from inboxwatch.storage.kv import InMemoryKeyValueStore, KeyValueStore, PostgresKeyValueStore
from inboxwatch.webhook import WebhookPipeline, identify_request

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/email-notify"
_HTTP_TIMEOUT_S = 30.0


@dataclass
class AppServices:
    """Long-lived collaborators shared by every request."""

    config: ServiceConfig
    kv: KeyValueStore
    checkpoints: CheckpointStore
    clients: ClientRegistry
    pipeline: WebhookPipeline


def build_services(
    config: ServiceConfig,
    kv: KeyValueStore,
    http_client: httpx.AsyncClient,
    *,
    gmail_base_url: str = GMAIL_API_BASE,
) -> AppServices:
    """Wire the verifier, stores and pipeline around the given resources."""
    checkpoints = CheckpointStore(kv, key_prefix=config.checkpoint_key_prefix)
    jwks = JwksCache(http_client, config.jwks_url, ttl_s=config.jwks_cache_ttl_s)
    verifier = PubSubTokenVerifier(jwks, clock_skew_s=config.token_clock_skew_s)
    pipeline = WebhookPipeline(
        config,
        verifier,
        checkpoints,
        http_client,
        gmail_base_url=gmail_base_url,
    )
    return AppServices(
        config=config,
        kv=kv,
        checkpoints=checkpoints,
        clients=ClientRegistry(kv),
        pipeline=pipeline,
    )


def get_services(request: Request) -> AppServices:
    """FastAPI dependency returning the services wired for this app."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized. Is the app lifespan running?")
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle for the HTTP client and KV backend.

    Resources injected through ``create_app()`` are left untouched; only what
    the lifespan creates is closed on shutdown.
    """
    if app.state.services is not None:
        yield
        return

    config: ServiceConfig = app.state.config
    http_client = httpx.AsyncClient(timeout=_HTTP_TIMEOUT_S)
    postgres: PostgresKeyValueStore | None = None
    try:
        if config.kv_backend == "postgres":
            postgres = await PostgresKeyValueStore.open(
                PostgresSettings.from_env(config.kv_db_name)
            )
            kv: KeyValueStore = postgres
        else:
            logger.warning("Using in-memory KV store; checkpoints are lost on restart")
            kv = InMemoryKeyValueStore()

        app.state.services = build_services(
            config, kv, http_client, gmail_base_url=app.state.gmail_base_url
        )
        logger.info("inboxwatch started (kv_backend=%s)", config.kv_backend)

        yield
    finally:
        app.state.services = None
        if postgres is not None:
            await postgres.close()
        await http_client.aclose()


def create_app(
    config: ServiceConfig | None = None,
    *,
    kv: KeyValueStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    gmail_base_url: str = GMAIL_API_BASE,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration. Defaults to ``ServiceConfig.from_env()``.
    kv, http_client:
        When both are given the services are wired immediately and the
        lifespan creates nothing; this is how tests drive the app without
        running startup. Otherwise the lifespan creates them from *config*.
    gmail_base_url:
        Gmail REST base URL, overridable for tests.
    """
    if config is None:
        config = ServiceConfig.from_env()

    app = FastAPI(
        title="inboxwatch",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.gmail_base_url = gmail_base_url
    app.state.services = None
    if kv is not None and http_client is not None:
        app.state.services = build_services(
            config, kv, http_client, gmail_base_url=gmail_base_url
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return f"inboxwatch {__version__}: Gmail push notifications webhook\n"

    @app.get("/health")
    async def health() -> HealthResponse:
        return HealthResponse()

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    @app.post(WEBHOOK_PATH)
    async def email_notify(
        request: Request,
        services: AppServices = Depends(get_services),
    ) -> JSONResponse:
        """Handle a Gmail Pub/Sub push delivery."""
        try:
            body = await request.json()
        except ValueError:
            # Rejected as malformed after authentication.
            body = None

        result = await services.pipeline.handle(
            body,
            authorization=request.headers.get("authorization"),
            server_name=request.headers.get(SERVER_NAME_HEADER),
            upstream_authorization=request.headers.get(UPSTREAM_AUTH_HEADER),
            request_url=str(request.url),
        )
        return JSONResponse(status_code=200, content=result.response.to_payload())

    @app.post("/watch")
    async def start_watch(
        request: Request,
        services: AppServices = Depends(get_services),
    ) -> WatchResponse:
        """Start the Gmail watch for a server and store its first checkpoint."""
        server_name, access_token = identify_request(
            request.headers.get(SERVER_NAME_HEADER),
            request.headers.get(UPSTREAM_AUTH_HEADER),
        )
        topic_name = services.config.watch_topic_name(server_name)
        result = await initialize_watch(
            services.pipeline.gmail_client(access_token),
            services.checkpoints,
            server_name,
            topic_name,
        )
        return WatchResponse(
            server=server_name,
            topic_name=topic_name,
            history_id=result.history_id,
            expiration=result.expiration.isoformat() if result.expiration else None,
        )

    @app.post("/register", status_code=201)
    async def register_client(
        registration: ClientRegistrationRequest,
        services: AppServices = Depends(get_services),
    ) -> dict:
        """Dynamic client registration."""
        client = await services.clients.register(registration)
        return client.model_dump(exclude={"created_at"})

    return app
