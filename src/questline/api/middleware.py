"""API error handling: domain exceptions to ``{"error": {"code", "message"}}`` responses.

Status code mapping:

- ``FlowNotFoundError`` → 404 Not Found ("Link expired")
- ``FlowInProgressError`` → 409 Conflict (another submission of the link is running)
- ``FlowError`` → 400 Bad Request (scheduling failed; the link stays valid)
- ``ValueError`` (includes ``questline.errors.ValidationError``) → 400 Bad Request
- ``ServiceShuttingDownError`` → 503 Service Unavailable
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from questline.api.deps import ServiceShuttingDownError
from questline.api.models import ErrorDetail, ErrorResponse
from questline.errors import FlowError, FlowInProgressError, FlowNotFoundError

logger = logging.getLogger(__name__)

LINK_EXPIRED_MESSAGE = "Link expired. Please request a new link."


async def _handle_flow_not_found(request: Request, exc: FlowNotFoundError) -> JSONResponse:
    logger.info("Schedule session flow not found: %s", exc.flow_id)
    body = ErrorResponse(
        error=ErrorDetail(
            code="FLOW_NOT_FOUND",
            message=LINK_EXPIRED_MESSAGE,
            flow_id=str(exc.flow_id),
        )
    )
    return JSONResponse(status_code=404, content=body.model_dump())


async def _handle_flow_in_progress(request: Request, exc: FlowInProgressError) -> JSONResponse:
    logger.info("Schedule session flow %s submitted twice", exc.flow_id)
    body = ErrorResponse(
        error=ErrorDetail(code="FLOW_IN_PROGRESS", message=str(exc), flow_id=str(exc.flow_id))
    )
    return JSONResponse(status_code=409, content=body.model_dump())


async def _handle_flow_error(request: Request, exc: FlowError) -> JSONResponse:
    """Return 400 when scheduling failed; the message is meant for the user."""
    logger.warning("Scheduling failed on %s: %s", request.url.path, exc, exc_info=exc)
    body = ErrorResponse(error=ErrorDetail(code="SCHEDULING_FAILED", message=str(exc)))
    return JSONResponse(status_code=400, content=body.model_dump())


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(error=ErrorDetail(code="VALIDATION_ERROR", message=str(exc)))
    return JSONResponse(status_code=400, content=body.model_dump())


async def _handle_shutting_down(request: Request, exc: ServiceShuttingDownError) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code="SHUTTING_DOWN", message=str(exc)))
    return JSONResponse(status_code=503, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into a 500 with the standard envelope."""

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
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(FlowNotFoundError, _handle_flow_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(
        FlowInProgressError, _handle_flow_in_progress  # type: ignore[arg-type]
    )
    app.add_exception_handler(FlowError, _handle_flow_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        ServiceShuttingDownError, _handle_shutting_down  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
