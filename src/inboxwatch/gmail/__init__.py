"""Gmail history enumeration and watch registration."""

from inboxwatch.gmail.history import (
    GmailHistoryClient,
    HistoryDelta,
    HistoryPage,
    WatchResult,
)
from inboxwatch.gmail.watch import initialize_watch

__all__ = [
    "GmailHistoryClient",
    "HistoryDelta",
    "HistoryPage",
    "WatchResult",
    "initialize_watch",
]
