"""clinicsync API middleware components.

- Request ID tracking for log correlation
- Consistent error response formatting, including domain error mapping
"""

from clinicsync.api.middleware.errors import (
    APIError,
    AuthorizationError,
    ErrorHandlerMiddleware,
    NotFoundError,
    build_error_response,
)
from clinicsync.api.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = [
    "APIError",
    "AuthorizationError",
    "ErrorHandlerMiddleware",
    "NotFoundError",
    "RequestIDMiddleware",
    "build_error_response",
    "get_request_id",
]
