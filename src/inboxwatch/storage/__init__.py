"""Key/value persistence and the checkpoint store built on it."""

from inboxwatch.storage.checkpoints import CheckpointStore
from inboxwatch.storage.kv import InMemoryKeyValueStore, KeyValueStore, PostgresKeyValueStore

__all__ = ["CheckpointStore", "InMemoryKeyValueStore", "KeyValueStore", "PostgresKeyValueStore"]
