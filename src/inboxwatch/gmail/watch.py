"""Watch initialization: the step that creates a server's first checkpoint."""

from __future__ import annotations

import logging

from inboxwatch.gmail.history import GmailHistoryClient, WatchResult
from inboxwatch.storage.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)


async def initialize_watch(
    client: GmailHistoryClient,
    checkpoints: CheckpointStore,
    server_name: str,
    topic_name: str,
) -> WatchResult:
    """Start (or renew) the Gmail watch for *server_name* and store its cursor.

    Deliveries for a server are rejected until this has run once, because the
    webhook never guesses a starting point.
    """
    result = await client.start_watch(topic_name)
    await checkpoints.put(server_name, result.history_id)
    logger.info(
        "Gmail watch started server=%s topic=%s historyId=%s expires=%s",
        server_name,
        topic_name,
        result.history_id,
        result.expiration.isoformat() if result.expiration else None,
    )
    return result
