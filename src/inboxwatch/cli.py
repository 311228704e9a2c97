"""CLI for inboxwatch: run the webhook and operate on checkpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import click
import httpx

from inboxwatch import __version__
from inboxwatch.config import ServiceConfig
from inboxwatch.core.logging import configure_logging
from inboxwatch.db import PostgresSettings
from inboxwatch.errors import GmailApiError, UpstreamUnavailableError
from inboxwatch.gmail.history import GmailHistoryClient
from inboxwatch.gmail.watch import initialize_watch
from inboxwatch.storage.checkpoints import CheckpointStore
from inboxwatch.storage.kv import InMemoryKeyValueStore, KeyValueStore, PostgresKeyValueStore

logger = logging.getLogger(__name__)

_access_token_option = click.option(
    "--access-token",
    envvar="GMAIL_ACCESS_TOKEN",
    required=True,
    help="OAuth access token for the mailbox (or set GMAIL_ACCESS_TOKEN)",
)


def _load_config() -> ServiceConfig:
    try:
        return ServiceConfig.from_env()
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@asynccontextmanager
async def _open_kv(config: ServiceConfig) -> AsyncIterator[KeyValueStore]:
    """Open the configured KV backend for the duration of one command."""
    if config.kv_backend != "postgres":
        logger.warning("KV_BACKEND=memory: changes made by this command are not persisted")
        yield InMemoryKeyValueStore()
        return

    store = await PostgresKeyValueStore.open(PostgresSettings.from_env(config.kv_db_name))
    try:
        yield store
    finally:
        await store.close()


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except (GmailApiError, UpstreamUnavailableError) as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """inboxwatch: Gmail push notification webhook with incremental history sync."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@click.option("--host", default=None, help="Bind address (default: INBOXWATCH_HOST)")
@click.option("--port", type=int, default=None, help="Bind port (default: INBOXWATCH_PORT)")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write JSON log lines to this file",
)
def serve(host: str | None, port: int | None, log_file: Path | None) -> None:
    """Run the webhook HTTP server."""
    import uvicorn

    from inboxwatch.api.app import create_app

    config = _load_config()
    configure_logging(
        config.log_level, config.log_format, log_file=log_file, service_name="inboxwatch"
    )
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.host,
        port=port or config.port,
        log_config=None,
        access_log=False,
    )


# ---------------------------------------------------------------------------
# watch
# ---------------------------------------------------------------------------


@cli.group()
def watch() -> None:
    """Manage the Gmail push watch."""


@watch.command("start")
@click.argument("server_name")
@_access_token_option
def watch_start(server_name: str, access_token: str) -> None:
    """Start (or renew) the Gmail watch for SERVER_NAME and store its checkpoint."""
    config = _load_config()
    try:
        topic_name = config.watch_topic_name(server_name)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    async def _start() -> None:
        async with _open_kv(config) as kv, httpx.AsyncClient(timeout=30.0) as http_client:
            checkpoints = CheckpointStore(kv, key_prefix=config.checkpoint_key_prefix)
            client = GmailHistoryClient(http_client, access_token)
            result = await initialize_watch(client, checkpoints, server_name, topic_name)
        click.echo(f"Watching {topic_name}")
        click.echo(f"  historyId: {result.history_id}")
        if result.expiration is not None:
            click.echo(f"  expires:   {result.expiration.isoformat()}")

    _run(_start())


# ---------------------------------------------------------------------------
# checkpoint
# ---------------------------------------------------------------------------


@cli.group()
def checkpoint() -> None:
    """Inspect or commit per-server history checkpoints."""


@checkpoint.command("get")
@click.argument("server_name")
def checkpoint_get(server_name: str) -> None:
    """Print the stored checkpoint for SERVER_NAME."""
    config = _load_config()

    async def _get() -> str | None:
        async with _open_kv(config) as kv:
            return await CheckpointStore(kv, key_prefix=config.checkpoint_key_prefix).get(
                server_name
            )

    value = asyncio.run(_get())
    if value is None:
        raise click.ClickException(f"No checkpoint stored for {server_name}")
    click.echo(value)


@checkpoint.command("set")
@click.argument("server_name")
@click.argument("history_id")
def checkpoint_set(server_name: str, history_id: str) -> None:
    """Commit HISTORY_ID as the checkpoint for SERVER_NAME."""
    config = _load_config()

    async def _set() -> None:
        async with _open_kv(config) as kv:
            await CheckpointStore(kv, key_prefix=config.checkpoint_key_prefix).put(
                server_name, history_id
            )

    asyncio.run(_set())
    click.echo(f"Checkpoint for {server_name} set to {history_id}")


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


@cli.group()
def history() -> None:
    """Query Gmail history without touching checkpoints."""


@history.command("list")
@click.option("--since", "since", required=True, help="History ID to list changes after")
@click.option("--max-pages", type=click.IntRange(min=1), default=None, help="Page bound")
@_access_token_option
def history_list(since: str, max_pages: int | None, access_token: str) -> None:
    """List INBOX messages added since a history ID, as JSON."""
    config = _load_config()

    async def _list() -> None:
        async with httpx.AsyncClient(timeout=30.0) as http_client:
            client = GmailHistoryClient(http_client, access_token)
            delta = await client.list_inbox_adds_since(
                since, max_pages=max_pages or config.history_max_pages
            )
        click.echo(
            json.dumps(
                {
                    "messageIds": delta.message_ids,
                    "historyId": delta.latest_history_id,
                    "hasMore": delta.has_more,
                },
                indent=2,
            )
        )

    _run(_list())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
