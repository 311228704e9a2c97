"""Error taxonomy shared by the verifier, the Gmail client and the webhook pipeline.

Status code mapping (see ``inboxwatch.api.middleware``):
- ``AuthenticationFailure`` → 401 with a ``WWW-Authenticate`` challenge
- ``MalformedRequestError`` (and ``MissingCheckpointError``) → 400
- ``StaleCursorError`` → 400 when it reaches the HTTP layer
- ``UpstreamUnavailableError`` → 503, so the broker retries
- ``GmailApiError`` → 502, so the broker retries
- ``ConfigurationError`` → 500
"""

from __future__ import annotations


class AuthenticationFailure(Exception):
    """The delivery could not be authenticated as coming from the push broker."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class MalformedRequestError(Exception):
    """The delivery is authentic but cannot be actioned as sent."""


class MissingCheckpointError(MalformedRequestError):
    """No checkpoint exists for the server; watch initialization never ran."""

    def __init__(self, server_name: str) -> None:
        self.server_name = server_name
        super().__init__("missing last processed history ID")


class UpstreamUnavailableError(Exception):
    """A transient failure talking to Google (JWKS, Gmail API). Retry later."""


class GmailApiError(Exception):
    """Gmail API returned a non-transient error response."""

    def __init__(self, api_method: str, status_code: int, details: str | None = None) -> None:
        self.api_method = api_method
        self.status_code = status_code
        self.details = details
        message = f"Gmail {api_method} failed with status {status_code}"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)


class StaleCursorError(GmailApiError):
    """The stored ``historyId`` is outside Gmail's history window."""

    def __init__(self, start_history_id: str, details: str | None = None) -> None:
        self.start_history_id = start_history_id
        super().__init__("history.list", 404, details)


class ConfigurationError(ValueError):
    """An operation needs a setting this deployment does not provide."""
