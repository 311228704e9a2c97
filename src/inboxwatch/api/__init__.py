"""HTTP surface for inboxwatch."""

from inboxwatch.api.app import create_app

__all__ = ["create_app"]
