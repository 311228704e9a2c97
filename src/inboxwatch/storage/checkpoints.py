"""Per-server history checkpoints stored in a key/value store."""

from __future__ import annotations

import logging

from inboxwatch.metrics import checkpoint_saves_total
from inboxwatch.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "cursor:"


class CheckpointStore:
    """Maps a server name to the last Gmail ``historyId`` it processed.

    Keys are ``<prefix><server_name>`` (``cursor:serverA`` by default).
    A checkpoint is created by watch initialization and only ever superseded,
    never deleted.
    """

    def __init__(self, kv: KeyValueStore, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._kv = kv
        self._key_prefix = key_prefix

    def key_for(self, server_name: str) -> str:
        return f"{self._key_prefix}{server_name}"

    async def get(self, server_name: str) -> str | None:
        """Return the stored checkpoint for *server_name*, or ``None``."""
        value = await self._kv.get(self.key_for(server_name))
        return value or None

    async def put(self, server_name: str, history_id: str) -> None:
        """Persist *history_id* as the checkpoint for *server_name*.

        Write failures are recorded and re-raised; a swallowed failure would
        make the next delivery reprocess everything since the old checkpoint.
        """
        if not history_id:
            raise ValueError("history_id must be a non-empty string")
        try:
            await self._kv.put(self.key_for(server_name), history_id)
        except Exception:
            checkpoint_saves_total.labels(server_name=server_name, status="error").inc()
            logger.error(
                "Failed to save checkpoint server=%s historyId=%s",
                server_name,
                history_id,
                exc_info=True,
            )
            raise
        checkpoint_saves_total.labels(server_name=server_name, status="success").inc()
        logger.debug("Saved checkpoint server=%s historyId=%s", server_name, history_id)
