"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": "<message>", "code": "<CODE>", "server": "..."}``
JSON responses.

Status code mapping:
- ``AuthenticationFailure`` → 401 Unauthorized with a ``WWW-Authenticate``
  challenge and no-store caching headers
- ``StaleCursorError`` → 400 Bad Request (operator must restart the watch)
- ``MalformedRequestError`` (incl. ``MissingCheckpointError``) → 400 Bad Request
- ``ConfigurationError`` → 500 Internal Server Error (deployment is missing a setting)
- ``UpstreamUnavailableError`` → 503 Service Unavailable
- ``GmailApiError`` → 502 Bad Gateway
- Any other ``Exception`` → 500 Internal Server Error

Every non-2xx status makes Pub/Sub redeliver the message later.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from inboxwatch.api.models import ErrorResponse
from inboxwatch.config import SERVER_NAME_HEADER
from inboxwatch.errors import (
    AuthenticationFailure,
    ConfigurationError,
    GmailApiError,
    MalformedRequestError,
    MissingCheckpointError,
    StaleCursorError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=message,
        code=code,
        server=request.headers.get(SERVER_NAME_HEADER),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _www_authenticate(reason: str) -> str:
    description = reason.replace("\\", "").replace('"', "'")
    return f'Bearer error="invalid_token", error_description="{description}"'


async def _handle_authentication_failure(
    request: Request,
    exc: AuthenticationFailure,
) -> JSONResponse:
    """Return 401 when the push identity token is missing or rejected."""
    logger.info("Unauthorized push delivery: %s", exc.reason)
    headers = {"WWW-Authenticate": _www_authenticate(exc.reason), **_NO_STORE_HEADERS}
    return _error_response(request, 401, "UNAUTHORIZED", "Unauthorized", headers)


async def _handle_stale_cursor(
    request: Request,
    exc: StaleCursorError,
) -> JSONResponse:
    """Return 400 when the stored checkpoint fell out of Gmail's history window."""
    logger.warning("Stale checkpoint %s: %s", exc.start_history_id, exc)
    return _error_response(
        request,
        400,
        "STALE_CHECKPOINT",
        f"history ID {exc.start_history_id} is no longer available; restart the watch",
    )


async def _handle_malformed_request(
    request: Request,
    exc: MalformedRequestError,
) -> JSONResponse:
    """Return 400 for deliveries that cannot be actioned as sent."""
    logger.info("Malformed request: %s", exc)
    code = "MISSING_CHECKPOINT" if isinstance(exc, MissingCheckpointError) else "MALFORMED_REQUEST"
    return _error_response(request, 400, code, str(exc))


async def _handle_configuration_error(
    request: Request,
    exc: ConfigurationError,
) -> JSONResponse:
    """Return 500 when the deployment lacks a setting the route needs."""
    logger.error("Configuration error: %s", exc)
    return _error_response(request, 500, "CONFIGURATION_ERROR", str(exc))


async def _handle_upstream_unavailable(
    request: Request,
    exc: UpstreamUnavailableError,
) -> JSONResponse:
    """Return 503 when Google could not be reached; the broker retries."""
    logger.warning("Upstream unavailable: %s", exc)
    return _error_response(request, 503, "UPSTREAM_UNAVAILABLE", str(exc))


async def _handle_gmail_api_error(
    request: Request,
    exc: GmailApiError,
) -> JSONResponse:
    """Return 502 when the Gmail API rejected a call."""
    logger.warning("Gmail API error: %s", exc)
    return _error_response(request, 502, "GMAIL_API_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(request, 500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Handlers are looked up along the exception's MRO, so ``StaleCursorError``
    resolves to its own handler before the ``GmailApiError`` one.
    """
    app.add_exception_handler(AuthenticationFailure, _handle_authentication_failure)  # type: ignore[arg-type]
    app.add_exception_handler(StaleCursorError, _handle_stale_cursor)  # type: ignore[arg-type]
    app.add_exception_handler(MalformedRequestError, _handle_malformed_request)  # type: ignore[arg-type]
    app.add_exception_handler(ConfigurationError, _handle_configuration_error)  # type: ignore[arg-type]
    app.add_exception_handler(UpstreamUnavailableError, _handle_upstream_unavailable)  # type: ignore[arg-type]
    app.add_exception_handler(GmailApiError, _handle_gmail_api_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
