"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert planner errors into
``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``EventValidationError``, ``FeedParseError``, OAuth state/denial/exchange
  errors → 400 Bad Request
- ``ProviderNotConnected``, ``NoAvailableSlot``, ``ReadOnlyEventError`` → 409 Conflict
- ``MissingClientConfiguration``, ``TokenRefreshFailed``, ``ProviderFetchError``,
  service not started → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from planner_sync.api.deps import ServiceUnavailableError
from planner_sync.api.models import ErrorDetail, ErrorResponse
from planner_sync.errors import (
    MissingClientConfiguration,
    NoAvailableSlot,
    PlannerSyncError,
    ProviderFetchError,
    ProviderNotConnected,
    ReadOnlyEventError,
    TokenRefreshFailed,
)

logger = logging.getLogger(__name__)

_CONFLICT_ERRORS = (ProviderNotConnected, NoAvailableSlot, ReadOnlyEventError)
_UNAVAILABLE_ERRORS = (MissingClientConfiguration, TokenRefreshFailed, ProviderFetchError)


def error_status_code(exc: PlannerSyncError) -> int:
    if isinstance(exc, _CONFLICT_ERRORS):
        return 409
    if isinstance(exc, _UNAVAILABLE_ERRORS):
        return 503
    return 400


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_planner_error(request: Request, exc: PlannerSyncError) -> JSONResponse:
    status_code = error_status_code(exc)
    logger.info(
        "%s %s rejected (%d %s): %s",
        request.method,
        request.url.path,
        status_code,
        exc.error_code,
        exc.message,
    )
    return error_response(status_code, exc.error_code, exc.message)


async def _handle_service_unavailable(
    request: Request,
    exc: ServiceUnavailableError,
) -> JSONResponse:
    logger.warning("Request before planner service start: %s", request.url.path)
    return error_response(503, "service_unavailable", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into the standard 500 envelope."""

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
            return error_response(500, "internal_error", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PlannerSyncError, _handle_planner_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        ServiceUnavailableError, _handle_service_unavailable  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
