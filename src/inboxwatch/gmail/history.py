"""Gmail REST client for history delta enumeration and watch registration.

The access token is supplied by the caller for each client instance; the
client never refreshes or stores credentials.

Error mapping:
- transport errors, HTTP 429 and 5xx → ``UpstreamUnavailableError``
- HTTP 404 from ``history.list`` → ``StaleCursorError``
- any other 4xx → ``GmailApiError``
- a success status whose body is not a JSON object → ``UpstreamUnavailableError``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from inboxwatch.errors import GmailApiError, StaleCursorError, UpstreamUnavailableError
from inboxwatch.metrics import DeliveryMetrics, record_gmail_api_call

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
DEFAULT_MAX_PAGES = 10
INBOX_LABEL = "INBOX"


def _format_google_error(response: httpx.Response) -> str | None:
    """Extract a compact Google API error summary from response JSON."""
    try:
        payload = response.json()
    except Exception:
        return None

    if not isinstance(payload, dict):
        return None

    # Gmail/Google API error shape:
    # {"error": {"code": 404, "message": "...", "status": "...", "errors": [{"reason": "..."}]}}
    nested_error = payload.get("error")
    if isinstance(nested_error, dict):
        parts: list[str] = []

        code = nested_error.get("code")
        if code is not None:
            parts.append(f"code={code}")

        status = nested_error.get("status")
        if isinstance(status, str) and status:
            parts.append(f"status={status}")

        reason = None
        nested_errors = nested_error.get("errors")
        if isinstance(nested_errors, list):
            for item in nested_errors:
                if isinstance(item, dict) and item.get("reason"):
                    reason = item["reason"]
                    break
        if isinstance(reason, str) and reason:
            parts.append(f"reason={reason}")

        message = nested_error.get("message")
        if isinstance(message, str) and message:
            parts.append(f"message={message}")

        return ", ".join(parts) if parts else None

    # OAuth error shape: {"error": "invalid_grant", "error_description": "..."}
    if isinstance(nested_error, str) and nested_error:
        error_description = payload.get("error_description")
        if isinstance(error_description, str) and error_description:
            return f"error={nested_error}, description={error_description}"
        return f"error={nested_error}"

    return None


@dataclass(frozen=True)
class HistoryPage:
    """One page of ``users.history.list``.

    ``history_id`` is the mailbox's current history id as reported with the
    page; ``last_record_id`` is the id of the last history record on the page.
    """

    message_ids: list[str]
    next_page_token: str | None
    history_id: str | None
    last_record_id: str | None = None


@dataclass(frozen=True)
class HistoryDelta:
    """Accumulated result of paging through history since a checkpoint.

    ``has_more`` is True when paging stopped at the page bound while Gmail
    still offered a continuation token; the id list is then partial.
    """

    message_ids: list[str]
    latest_history_id: str
    has_more: bool


@dataclass(frozen=True)
class WatchResult:
    """Response of ``users.watch``."""

    history_id: str
    expiration: datetime | None


def _message_ids_added(history: list[dict[str, Any]]) -> list[str]:
    """Extract added message ids from history records, in order."""
    message_ids: list[str] = []
    for record in history:
        if not isinstance(record, dict):
            continue
        # Records may also carry messagesDeleted / labelsAdded / labelsRemoved;
        # only additions are reported.
        added_list = record.get("messagesAdded")
        if not isinstance(added_list, list):
            continue
        for added in added_list:
            message = added.get("message") if isinstance(added, dict) else None
            message_id = message.get("id") if isinstance(message, dict) else None
            if message_id:
                message_ids.append(str(message_id))
    return message_ids


class GmailHistoryClient:
    """Thin async Gmail client scoped to one mailbox and one access token."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        access_token: str,
        *,
        user_id: str = "me",
        base_url: str = GMAIL_API_BASE,
        metrics: DeliveryMetrics | None = None,
    ) -> None:
        self._http_client = http_client
        self._access_token = access_token
        self._user_id = user_id
        self._base_url = base_url.rstrip("/")
        self._metrics = metrics

    def _url(self, path: str) -> str:
        return f"{self._base_url}/users/{self._user_id}/{path}"

    async def _request(
        self,
        method: str,
        path: str,
        api_method: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._http_client.request(
                method,
                self._url(path),
                headers={"Authorization": f"Bearer {self._access_token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            record_gmail_api_call(api_method, "error")
            logger.error("Gmail %s request failed: %s", api_method, exc)
            raise UpstreamUnavailableError(f"Gmail {api_method} request failed") from exc

        if response.is_error:
            google_error = _format_google_error(response)
            logger.error(
                "Gmail %s failed status=%s details=%s",
                api_method,
                response.status_code,
                google_error or "-",
            )
            if response.status_code == 429 or response.status_code >= 500:
                record_gmail_api_call(api_method, "unavailable")
                raise UpstreamUnavailableError(
                    f"Gmail {api_method} unavailable (status {response.status_code})"
                )
            record_gmail_api_call(api_method, "error")
            raise GmailApiError(api_method, response.status_code, google_error)

        if response.status_code == 204 or not response.content:
            record_gmail_api_call(api_method, "success")
            return {}
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            # Typically an intercepting proxy answering with an HTML page.
            record_gmail_api_call(api_method, "unavailable")
            logger.error(
                "Gmail %s returned a non-JSON-object body (status=%s, content-type=%s)",
                api_method,
                response.status_code,
                response.headers.get("content-type", "-"),
            )
            raise UpstreamUnavailableError(f"Gmail {api_method} returned an unreadable response")
        record_gmail_api_call(api_method, "success")
        return payload

    async def fetch_history_page(
        self,
        start_history_id: str,
        page_token: str | None = None,
    ) -> HistoryPage:
        """Fetch one page of INBOX ``messageAdded`` history since *start_history_id*."""
        params: dict[str, str] = {
            "startHistoryId": start_history_id,
            "labelId": INBOX_LABEL,
            "historyTypes": "messageAdded",
        }
        if page_token:
            params["pageToken"] = page_token

        try:
            data = await self._request("GET", "history", "history.list", params=params)
        except GmailApiError as exc:
            if exc.status_code == 404:
                logger.warning(
                    "History ID %s is outside the history window: %s",
                    start_history_id,
                    exc.details,
                )
                raise StaleCursorError(start_history_id, exc.details) from exc
            raise

        if self._metrics is not None:
            self._metrics.record_history_page()

        history = data.get("history")
        if not isinstance(history, list):
            history = []
        history_id = data.get("historyId")
        last_record_id = history[-1].get("id") if history and isinstance(history[-1], dict) else None
        return HistoryPage(
            message_ids=_message_ids_added(history),
            next_page_token=data.get("nextPageToken") or None,
            history_id=str(history_id) if history_id else None,
            last_record_id=str(last_record_id) if last_record_id else None,
        )

    async def list_inbox_adds_since(
        self,
        start_history_id: str,
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> HistoryDelta:
        """Page through history and collect newly added INBOX message ids.

        Stops when Gmail returns no continuation token, or after *max_pages*
        pages (``has_more=True``).

        On a complete walk the returned cursor is the last ``historyId``
        reported by a page. On a truncated walk it is the id of the last
        history record actually fetched, since the page-level ``historyId`` is
        the mailbox's current position and would skip the unfetched records.
        Either falls back to *start_history_id*.
        """
        if max_pages < 1:
            raise ValueError("max_pages must be >= 1")

        message_ids: list[str] = []
        seen: set[str] = set()
        latest_history_id = start_history_id
        last_record_id: str | None = None
        page_token: str | None = None
        pages = 0

        while True:
            page = await self.fetch_history_page(start_history_id, page_token)
            pages += 1

            for message_id in page.message_ids:
                if message_id not in seen:
                    seen.add(message_id)
                    message_ids.append(message_id)
            if page.history_id:
                latest_history_id = page.history_id
            if page.last_record_id:
                last_record_id = page.last_record_id

            if not page.next_page_token:
                return HistoryDelta(message_ids, latest_history_id, has_more=False)
            if pages >= max_pages:
                logger.warning(
                    "History paging stopped after %d page(s) from historyId=%s; more remain",
                    pages,
                    start_history_id,
                )
                return HistoryDelta(
                    message_ids, last_record_id or latest_history_id, has_more=True
                )
            page_token = page.next_page_token

    async def get_profile(self) -> dict[str, Any]:
        """Fetch the mailbox profile (``emailAddress``, current ``historyId``)."""
        return await self._request("GET", "profile", "profile.get")

    async def start_watch(
        self,
        topic_name: str,
        label_ids: tuple[str, ...] = (INBOX_LABEL,),
    ) -> WatchResult:
        """Register a Gmail push watch publishing to *topic_name*."""
        data = await self._request(
            "POST",
            "watch",
            "watch",
            json={
                "topicName": topic_name,
                "labelIds": list(label_ids),
                "labelFilterBehavior": "INCLUDE",
            },
        )
        history_id = data.get("historyId")
        if not history_id:
            raise GmailApiError("watch", 200, "response did not include historyId")

        expiration: datetime | None = None
        expiration_ms = data.get("expiration")
        if expiration_ms:
            try:
                expiration = datetime.fromtimestamp(int(expiration_ms) / 1000, UTC)
            except (TypeError, ValueError, OSError):
                logger.warning("Ignoring unparseable watch expiration: %r", expiration_ms)
        else:
            logger.warning("Watch response did not include expiration timestamp")

        return WatchResult(history_id=str(history_id), expiration=expiration)
