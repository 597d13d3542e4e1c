"""JSON error responses for the REST API.

Every failure leaves the API in one shape::

    {"error": <code>, "message": <text>, "request_id": <id>, "detail": {...}}

Routers let service exceptions propagate; the middleware below picks the
status code. ``request_id`` and ``detail`` are omitted when empty.
"""

import logging
from collections.abc import Callable
from typing import Any, NamedTuple

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from clinicsync.api.middleware.request_id import get_request_id
from clinicsync.errors import (
    AuthenticationError,
    BrokerUnavailable,
    ClinicSyncError,
    ExecutorFailure,
    InvalidStepError,
    PrerequisiteNotMetError,
    ValidationError,
    WorkflowNotFoundError,
    WorkflowStateError,
)

logger = logging.getLogger(__name__)

# First match wins: list subclasses ahead of their bases
DOMAIN_ERROR_STATUS: tuple[tuple[type[ClinicSyncError], str, int], ...] = (
    (AuthenticationError, "unauthorized", 401),
    (ValidationError, "validation_error", 400),
    (WorkflowNotFoundError, "not_found", 404),
    (PrerequisiteNotMetError, "prerequisite_not_met", 409),
    (InvalidStepError, "invalid_step", 409),
    (WorkflowStateError, "invalid_workflow_state", 409),
    (ExecutorFailure, "executor_failed", 409),
    (BrokerUnavailable, "service_unavailable", 503),
)


class APIError(Exception):
    """An error raised by a router with its HTTP rendering attached.

    Attributes:
        error: Machine-readable code, e.g. ``"forbidden"``.
        message: Text shown to the caller.
        status_code: HTTP status of the response.
        detail: Extra structured context, if any.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int = 400,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.detail = detail


class NotFoundError(APIError):
    """404 for a resource the caller cannot see."""

    def __init__(
        self, resource: str, identifier: str, detail: dict[str, Any] | None = None
    ) -> None:
        super().__init__("not_found", f"{resource} not found: {identifier}", 404, detail)


class AuthorizationError(APIError):
    """403 for an authenticated caller lacking the required role."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None) -> None:
        super().__init__("forbidden", message, 403, detail)


class _Rendering(NamedTuple):
    error: str
    message: str
    status_code: int
    detail: dict[str, Any] | None = None


def domain_error_status(exc: ClinicSyncError) -> tuple[str, int]:
    """Error code and HTTP status for a service exception."""
    return next(
        ((code, status) for kind, code, status in DOMAIN_ERROR_STATUS if isinstance(exc, kind)),
        ("domain_error", 400),
    )


def _render(exc: Exception) -> _Rendering | None:
    """Map a known exception to its response, or None for unexpected ones."""
    if isinstance(exc, APIError):
        return _Rendering(exc.error, exc.message, exc.status_code, exc.detail)
    if isinstance(exc, ClinicSyncError):
        code, status_code = domain_error_status(exc)
        return _Rendering(code, exc.message, status_code, exc.detail)
    if isinstance(exc, HTTPException):
        return _Rendering("http_error", str(exc.detail), exc.status_code)
    if isinstance(exc, PydanticValidationError):
        return _Rendering(
            "validation_error",
            "Request validation failed",
            422,
            {"errors": exc.errors(include_url=False, include_context=False)},
        )
    return None


def build_error_response(
    error: str,
    message: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> JSONResponse:
    """The JSON error body, tagged with the current request id."""
    body: dict[str, Any] = {"error": error, "message": message}
    if request_id := get_request_id():
        body["request_id"] = request_id
    if detail:
        body["detail"] = detail
    return JSONResponse(body, status_code=status_code)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Turn exceptions escaping the routers into JSON error responses.

    Unknown exceptions are logged with their traceback and become a 500
    that reveals nothing about the cause.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            rendering = _render(exc)
            if rendering is None:
                logger.exception("Unhandled error on %s %s", request.method, request.url.path)
                rendering = _Rendering("internal_error", "An internal error occurred", 500)
            elif rendering.status_code >= 500:
                logger.warning(
                    "%s %s failed: %s", request.method, request.url.path, rendering.message
                )
            return build_error_response(*rendering)
