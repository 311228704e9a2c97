"""inboxwatch: verified Gmail push notifications with checkpointed history sync."""

__version__ = "0.1.0"
