"""Prometheus metrics for the push webhook and history sync.

Metrics exported:
- inboxwatch_deliveries_total: Counter of webhook deliveries by outcome
- inboxwatch_delivery_latency_seconds: Histogram of end-to-end delivery handling
- inboxwatch_token_verifications_total: Counter of push token checks by result
- inboxwatch_gmail_api_calls_total: Counter of Gmail API calls
- inboxwatch_history_pages_total: Counter of history.list pages fetched
- inboxwatch_messages_found_total: Counter of new message ids reported
- inboxwatch_checkpoint_saves_total: Counter of checkpoint writes
- inboxwatch_errors_total: Counter of errors by type

Per-tenant metrics carry a ``server_name`` label.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prometheus_client import Counter, Histogram

if TYPE_CHECKING:
    from collections.abc import Callable

deliveries_total = Counter(
    "inboxwatch_deliveries_total",
    "Total number of webhook deliveries handled, by outcome",
    labelnames=["server_name", "outcome"],
)

delivery_latency_seconds = Histogram(
    "inboxwatch_delivery_latency_seconds",
    "Latency of webhook delivery handling in seconds",
    labelnames=["server_name", "outcome"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

token_verifications_total = Counter(
    "inboxwatch_token_verifications_total",
    "Total number of push identity token verifications",
    labelnames=["result", "reason"],
)

gmail_api_calls_total = Counter(
    "inboxwatch_gmail_api_calls_total",
    "Total number of Gmail API calls",
    labelnames=["api_method", "status"],
)

history_pages_total = Counter(
    "inboxwatch_history_pages_total",
    "Total number of history.list pages fetched",
    labelnames=["server_name"],
)

messages_found_total = Counter(
    "inboxwatch_messages_found_total",
    "Total number of new inbox message ids reported to the orchestrator",
    labelnames=["server_name"],
)

checkpoint_saves_total = Counter(
    "inboxwatch_checkpoint_saves_total",
    "Total number of checkpoint save operations",
    labelnames=["server_name", "status"],
)

errors_total = Counter(
    "inboxwatch_errors_total",
    "Total number of errors by type",
    labelnames=["server_name", "error_type", "operation"],
)


# Label used until the push token verifies; the server-name header is
# caller-controlled before that and must not mint new series.
UNAUTHENTICATED = "unauthenticated"


class DeliveryMetrics:
    """Metrics recorder bound to one server name."""

    def __init__(self, server_name: str = UNAUTHENTICATED) -> None:
        self._server_name = server_name

    @property
    def server_name(self) -> str:
        return self._server_name

    def bind(self, server_name: str) -> None:
        """Attribute everything recorded from now on to *server_name*."""
        self._server_name = server_name

    def record_delivery(self, outcome: str, latency: float | None = None) -> None:
        """Record a finished delivery.

        Args:
            outcome: "empty", "messages", "resynced", or an error class label
            latency: Optional latency in seconds
        """
        deliveries_total.labels(server_name=self._server_name, outcome=outcome).inc()
        if latency is not None:
            delivery_latency_seconds.labels(
                server_name=self._server_name, outcome=outcome
            ).observe(latency)

    @contextmanager
    def track_delivery(self, outcome_callback: Callable[[], str]) -> Iterator[None]:
        """Context manager timing a delivery; the outcome is read on exit.

        Example:
            with metrics.track_delivery(lambda: outcome):
                outcome = await process()
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.record_delivery(
                outcome=outcome_callback(), latency=time.perf_counter() - start_time
            )

    def record_history_page(self) -> None:
        history_pages_total.labels(server_name=self._server_name).inc()

    def record_messages_found(self, count: int) -> None:
        if count:
            messages_found_total.labels(server_name=self._server_name).inc(count)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record an error occurrence.

        Args:
            error_type: Type of error (e.g., "http_error", "timeout", "parse_error")
            operation: Operation that failed (e.g., "enumerate", "checkpoint_save")
        """
        errors_total.labels(
            server_name=self._server_name,
            error_type=error_type,
            operation=operation,
        ).inc()


def record_token_verification(result: str, reason: str = "") -> None:
    token_verifications_total.labels(result=result, reason=reason).inc()


def record_gmail_api_call(api_method: str, status: str) -> None:
    gmail_api_calls_total.labels(api_method=api_method, status=status).inc()


def get_error_type(exc: Exception) -> str:
    """Extract error type from exception.

    Args:
        exc: Exception instance

    Returns:
        Error type string for metrics labeling
    """
    exc_type = type(exc).__name__

    if "HTTPStatus" in exc_type or "HTTP" in exc_type:
        return "http_error"
    if "Timeout" in exc_type:
        return "timeout"
    if "ConnectionError" in exc_type or "ConnectError" in exc_type:
        return "connection_error"
    if "JSON" in exc_type or "Parse" in exc_type:
        return "parse_error"
    if "ValueError" in exc_type or "ValidationError" in exc_type:
        return "validation_error"

    return exc_type.lower()
