"""Gmail push webhook pipeline.

One delivery walks Received → Verified → Decoded → Identified → Enumerated →
Checkpointed → Responded, and any step may fail into an error that the HTTP
layer maps to a status code (see ``inboxwatch.api.middleware``).

The pipeline always enumerates from the stored checkpoint, never from the
cursor carried by the delivery, and writes the next checkpoint before the
response is returned. Pub/Sub redelivers anything that did not get a 2xx.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from inboxwatch.auth.pubsub_oidc import PubSubTokenVerifier, TokenVerificationError
from inboxwatch.config import ServiceConfig
from inboxwatch.core.logging import delivery_context
from inboxwatch.errors import (
    AuthenticationFailure,
    GmailApiError,
    MalformedRequestError,
    MissingCheckpointError,
    StaleCursorError,
    UpstreamUnavailableError,
)
from inboxwatch.gmail.history import GMAIL_API_BASE, GmailHistoryClient, HistoryDelta
from inboxwatch.metrics import DeliveryMetrics, get_error_type, record_token_verification
from inboxwatch.storage.checkpoints import CheckpointStore

logger = logging.getLogger(__name__)

PROMPT_HEADER = "Google email notification received:"


# ---------------------------------------------------------------------------
# Envelope decoding
# ---------------------------------------------------------------------------


class DeliveryEnvelope(BaseModel):
    """The ``message`` object of a Pub/Sub push request."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    data: str | None = None
    attributes: dict[str, str] = Field(default_factory=dict)
    publish_time: str | None = Field(default=None, alias="publishTime")
    message_id: str | None = Field(default=None, alias="messageId")


@dataclass(frozen=True)
class ChangeNotification:
    """Mailbox address and history id announced by a delivery, when known."""

    email_address: str | None = None
    history_id: str | None = None


def decode_envelope_data(data: str | None) -> dict[str, Any] | None:
    """Decode base64 or base64url ``data`` into a JSON object.

    Missing padding is tolerated. Returns ``None`` when the value is absent,
    not valid base64, not UTF-8, not JSON, or not a JSON object.
    """
    if not data:
        return None
    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        decoded = base64.b64decode(normalized, validate=True).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _as_str(value: Any) -> str | None:
    # Gmail sends historyId as a JSON number; attributes are always strings.
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def parse_push_body(body: Any) -> tuple[DeliveryEnvelope, ChangeNotification]:
    """Validate a push request body and extract the change notification.

    Accepts the standard ``{"message": {...}, "subscription": "..."}`` wrapper
    or a bare message object. Decoded ``data`` fields win over attributes.

    Raises:
        MalformedRequestError: the body is not a JSON object or the message
            object has the wrong shape.
    """
    if not isinstance(body, dict):
        raise MalformedRequestError("request body must be a JSON object")
    message = body.get("message", body)
    if not isinstance(message, dict):
        raise MalformedRequestError("push message must be a JSON object")
    try:
        envelope = DeliveryEnvelope.model_validate(message)
    except ValidationError as exc:
        raise MalformedRequestError("push message has an invalid shape") from exc

    decoded = decode_envelope_data(envelope.data)
    if envelope.data and decoded is None:
        logger.warning("Push data could not be decoded; falling back to attributes")
    decoded = decoded or {}

    notification = ChangeNotification(
        email_address=_as_str(decoded.get("emailAddress"))
        or _as_str(envelope.attributes.get("emailAddress")),
        history_id=_as_str(decoded.get("historyId"))
        or _as_str(envelope.attributes.get("historyId")),
    )
    return envelope, notification


# ---------------------------------------------------------------------------
# Response model
# ---------------------------------------------------------------------------


class ProcessData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    prompt_content: str | None = Field(default=None, alias="promptContent")


class WebhookResponse(BaseModel):
    """Body returned to the orchestrator wrapping this service."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    req_response_code: int = Field(default=202, alias="reqResponseCode")
    req_response_content: str = Field(default="", alias="reqResponseContent")
    req_response_content_type: str | None = Field(default="text", alias="reqResponseContentType")
    process_data: ProcessData | None = Field(default=None, alias="processData")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def build_prompt(summary: dict[str, Any]) -> str:
    """Render the orchestrator prompt with a fenced JSON summary."""
    return f"{PROMPT_HEADER}\n\n```json\n{json.dumps(summary, indent=2)}\n```"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one processed delivery."""

    server_name: str
    response: WebhookResponse
    message_ids: list[str] = field(default_factory=list)
    checkpoint: str | None = None
    has_more: bool = False
    resynced: bool = False

    @property
    def outcome(self) -> str:
        if self.resynced:
            return "resynced"
        return "messages" if self.message_ids else "empty"


# ---------------------------------------------------------------------------
# Checkpoint selection
# ---------------------------------------------------------------------------


def _is_numeric(value: str) -> bool:
    return value.isascii() and value.isdigit()


def select_next_checkpoint(
    stored: str,
    delivery_history_id: str | None,
    delta: HistoryDelta,
) -> str:
    """Choose the checkpoint to persist after an enumeration.

    The delivery's ``historyId`` is used when present; the enumerator's cursor
    otherwise, and always when the enumeration was truncated so the remainder
    is picked up next time. Numeric cursors never move backwards.
    """
    if delta.has_more or not delivery_history_id:
        candidate = delta.latest_history_id
    else:
        candidate = delivery_history_id

    if _is_numeric(candidate) and _is_numeric(stored) and int(candidate) < int(stored):
        logger.info("Not regressing checkpoint from %s to %s", stored, candidate)
        return stored
    return candidate


def _bearer_token(value: str | None) -> str | None:
    if not value:
        return None
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def identify_request(
    server_name: str | None,
    upstream_authorization: str | None,
) -> tuple[str, str]:
    """Return the server name and Gmail access token carried by request headers.

    Raises:
        MalformedRequestError: either header is missing, or the token is empty.
    """
    if not server_name:
        raise MalformedRequestError("missing server name")
    if not upstream_authorization:
        raise MalformedRequestError("missing MCP authorization header")
    access_token = _bearer_token(upstream_authorization)
    if not access_token:
        raise MalformedRequestError("missing access token")
    return server_name, access_token


def _outcome_for(exc: BaseException) -> str:
    if isinstance(exc, AuthenticationFailure):
        return "unauthorized"
    if isinstance(exc, StaleCursorError):
        return "stale_cursor"
    if isinstance(exc, MalformedRequestError):
        return "malformed"
    if isinstance(exc, UpstreamUnavailableError):
        return "upstream_unavailable"
    if isinstance(exc, GmailApiError):
        return "upstream_error"
    return "error"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class WebhookPipeline:
    """Processes Pub/Sub push deliveries for any number of servers."""

    def __init__(
        self,
        config: ServiceConfig,
        verifier: PubSubTokenVerifier,
        checkpoints: CheckpointStore,
        http_client: httpx.AsyncClient,
        *,
        gmail_base_url: str = GMAIL_API_BASE,
    ) -> None:
        self._config = config
        self._verifier = verifier
        self._checkpoints = checkpoints
        self._http_client = http_client
        self._gmail_base_url = gmail_base_url

    async def handle(
        self,
        body: Any,
        *,
        authorization: str | None,
        server_name: str | None,
        upstream_authorization: str | None,
        request_url: str,
    ) -> DeliveryResult:
        """Run one delivery through the pipeline.

        Args:
            body: Parsed JSON request body.
            authorization: ``Authorization`` header sent by Pub/Sub.
            server_name: ``x-mcp-name`` header.
            upstream_authorization: ``x-mcp-authorization`` header carrying the
                Gmail access token.
            request_url: Full request URL, the audience prefix when none is
                configured.
        """
        tracer = trace.get_tracer("inboxwatch")
        metrics = DeliveryMetrics()
        outcome = "error"

        with (
            delivery_context(server_name),
            tracer.start_as_current_span("inboxwatch.webhook.delivery") as span,
            metrics.track_delivery(lambda: outcome),
        ):
            span.set_attribute("inboxwatch.server_name", server_name or "")
            try:
                with tracer.start_as_current_span("inboxwatch.webhook.verify"):
                    await self._authenticate(authorization, server_name, request_url)
                metrics.bind(server_name or "unknown")

                _, notification = parse_push_body(body)
                span.set_attribute("inboxwatch.history_id", notification.history_id or "")

                name, access_token = identify_request(server_name, upstream_authorization)

                result = await self._sync(name, access_token, notification, metrics)
            except Exception as exc:
                outcome = _outcome_for(exc)
                metrics.record_error(get_error_type(exc), "delivery")
                span.set_attribute("inboxwatch.outcome", outcome)
                raise

            outcome = result.outcome
            span.set_attribute("inboxwatch.outcome", outcome)
            span.set_attribute("inboxwatch.messages_found", len(result.message_ids))
            return result

    async def _authenticate(
        self,
        authorization: str | None,
        server_name: str | None,
        request_url: str,
    ) -> None:
        token = _bearer_token(authorization)
        if token is None:
            record_token_verification("rejected", "missing_token")
            logger.warning("Push delivery rejected: missing bearer token")
            raise AuthenticationFailure("missing bearer token")

        expected_signer = self._config.expected_signer_email(server_name)
        audience_prefix = self._config.token_audience_prefix or request_url
        try:
            claims = await self._verifier.verify(token, expected_signer, audience_prefix)
        except TokenVerificationError as exc:
            logger.warning("Push delivery rejected: %s (%s)", exc.reason, exc.code)
            raise AuthenticationFailure(exc.reason) from exc
        logger.debug("Push token verified for signer %s", claims.email)

    def gmail_client(
        self,
        access_token: str,
        metrics: DeliveryMetrics | None = None,
    ) -> GmailHistoryClient:
        return GmailHistoryClient(
            self._http_client,
            access_token,
            base_url=self._gmail_base_url,
            metrics=metrics,
        )

    async def _sync(
        self,
        server_name: str,
        access_token: str,
        notification: ChangeNotification,
        metrics: DeliveryMetrics,
    ) -> DeliveryResult:
        stored = await self._checkpoints.get(server_name)
        if stored is None:
            logger.warning("No checkpoint for server %s; start the watch first", server_name)
            raise MissingCheckpointError(server_name)

        client = self.gmail_client(access_token, metrics)
        try:
            delta = await client.list_inbox_adds_since(
                stored, max_pages=self._config.history_max_pages
            )
        except StaleCursorError:
            if self._config.stale_cursor_policy != "resync":
                raise
            return await self._resync(server_name, client, notification, stored)

        next_checkpoint = select_next_checkpoint(stored, notification.history_id, delta)
        await self._checkpoints.put(server_name, next_checkpoint)
        metrics.record_messages_found(len(delta.message_ids))
        logger.info(
            "Processed delivery: %d new message(s), checkpoint %s -> %s%s",
            len(delta.message_ids),
            stored,
            next_checkpoint,
            " (truncated)" if delta.has_more else "",
        )

        process_data = None
        if delta.message_ids:
            summary: dict[str, Any] = {"name": server_name}
            if notification.email_address:
                summary["emailAddress"] = notification.email_address
            summary["emailIds"] = delta.message_ids
            if delta.has_more:
                summary["hasMore"] = True
            process_data = ProcessData(prompt_content=build_prompt(summary))

        return DeliveryResult(
            server_name=server_name,
            response=WebhookResponse(process_data=process_data),
            message_ids=delta.message_ids,
            checkpoint=next_checkpoint,
            has_more=delta.has_more,
        )

    async def _resync(
        self,
        server_name: str,
        client: GmailHistoryClient,
        notification: ChangeNotification,
        stale_checkpoint: str,
    ) -> DeliveryResult:
        profile = await client.get_profile()
        history_id = _as_str(profile.get("historyId"))
        if not history_id:
            raise GmailApiError("profile.get", 200, "response did not include historyId")

        await self._checkpoints.put(server_name, history_id)
        logger.warning(
            "Checkpoint %s for server %s was outside the history window; resynced to %s. "
            "Changes in between were not enumerated.",
            stale_checkpoint,
            server_name,
            history_id,
        )

        summary: dict[str, Any] = {"name": server_name}
        email_address = notification.email_address or _as_str(profile.get("emailAddress"))
        if email_address:
            summary["emailAddress"] = email_address
        summary["emailIds"] = []
        summary["resynced"] = True

        return DeliveryResult(
            server_name=server_name,
            response=WebhookResponse(
                process_data=ProcessData(prompt_content=build_prompt(summary))
            ),
            checkpoint=history_id,
            resynced=True,
        )
