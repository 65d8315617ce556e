"""
Standardized error responses for the action link API.

Every failure is rendered as ``{"ok": false, "error": <kind>, "message": ...}``
so the public action page can branch on ``error`` without parsing text.
"""

import logging
from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Error kinds exposed to API clients."""

    # Request errors
    VALIDATION_ERROR = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"

    # Abuse protection (retryable after the window)
    RATE_LIMITED = "rate_limited"
    CAPTCHA_FAILED = "captcha_failed"

    # Link business rules (not retryable without a new link)
    LINK_INVALID = "link_invalid"
    LINK_INACTIVE = "link_inactive"
    LINK_EXPIRED = "link_expired"
    LINK_EXHAUSTED = "link_exhausted"
    EMAIL_MISMATCH = "email_mismatch"

    # System errors
    DOWNSTREAM_FAILURE = "downstream_failure"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: str | None = None
    message: str
    code: str | None = None


class APIException(HTTPException):
    """Extended HTTPException with standardized error codes."""

    def __init__(
        self,
        status_code: int,
        code: ErrorCode,
        message: str,
        details: list[ErrorDetail] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(status_code=status_code, detail=message, headers=headers)


class ValidationError(APIException):
    """Malformed input."""

    def __init__(self, message: str, details: list[ErrorDetail] | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            details=details,
        )


class UnauthorizedError(APIException):
    """Authentication required error."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=ErrorCode.UNAUTHORIZED,
            message=message,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(APIException):
    """Authenticated, but not a member of the requested tenant."""

    def __init__(self, message: str = "Permission denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=ErrorCode.FORBIDDEN,
            message=message,
        )


class NotFoundError(APIException):
    """Resource not found error."""

    def __init__(self, resource: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} not found",
        )


class RateLimitError(APIException):
    """Rate limit exceeded error."""

    def __init__(self, retry_after: int | None = None):
        headers = {}
        if retry_after:
            headers["Retry-After"] = str(retry_after)
        self.retry_after = retry_after
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            code=ErrorCode.RATE_LIMITED,
            message="Too many requests. Please try again later.",
            headers=headers if headers else None,
        )


class CaptchaFailedError(APIException):
    """The CAPTCHA verifier rejected the challenge response."""

    def __init__(self, message: str = "CAPTCHA verification failed"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=ErrorCode.CAPTCHA_FAILED,
            message=message,
        )


class LinkRejectedError(APIException):
    """Base class for business-rule rejections of an action link."""

    code: ErrorCode
    default_message: str = "Link rejected"

    def __init__(self, message: str | None = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=self.code,
            message=message or self.default_message,
        )


class LinkInvalidError(LinkRejectedError):
    # Same response whether the hash never existed or was mistyped
    code = ErrorCode.LINK_INVALID
    default_message = "Invalid or missing link"


class LinkInactiveError(LinkRejectedError):
    code = ErrorCode.LINK_INACTIVE
    default_message = "Link not active"


class LinkExpiredError(LinkRejectedError):
    code = ErrorCode.LINK_EXPIRED
    default_message = "Link expired"


class LinkExhaustedError(LinkRejectedError):
    code = ErrorCode.LINK_EXHAUSTED
    default_message = "Max uses exceeded"


class EmailMismatchError(LinkRejectedError):
    code = ErrorCode.EMAIL_MISMATCH
    default_message = "Email mismatch"


class DownstreamError(APIException):
    """Store, cache, audit or CAPTCHA backend failure."""

    def __init__(self, message: str = "A downstream service failed"):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCode.DOWNSTREAM_FAILURE,
            message=message,
        )


class ServiceUnavailableError(APIException):
    """Feature is not configured on this deployment."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code=ErrorCode.SERVICE_UNAVAILABLE,
            message=message,
        )


def create_error_response(
    code: ErrorCode,
    message: str,
    details: list[ErrorDetail] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Create a standardized error response dictionary."""
    response: dict[str, Any] = {
        "ok": False,
        "error": code.value,
        "message": message,
    }

    if details:
        response["details"] = [d.model_dump(exclude_none=True) for d in details]

    if request_id:
        response["request_id"] = request_id

    return response


async def api_exception_handler(request: Request, exc: APIException) -> JSONResponse:
    """Handle APIException and return standardized response."""
    request_id = getattr(request.state, "request_id", None)

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=exc.code,
            message=exc.message,
            details=exc.details,
            request_id=request_id,
        ),
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render pydantic request validation failures as 400 validation_error.

    Input values are deliberately left out of the details: request bodies
    carry raw link tokens.
    """
    details = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        details.append(
            ErrorDetail(
                field=".".join(loc) or None,
                message=err.get("msg", "Invalid value"),
                code=err.get("type"),
            )
        )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=create_error_response(
            code=ErrorCode.VALIDATION_ERROR,
            message="Request validation failed",
            details=details,
            request_id=getattr(request.state, "request_id", None),
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle standard HTTPException and convert to standardized response."""
    status_to_code = {
        400: ErrorCode.VALIDATION_ERROR,
        401: ErrorCode.UNAUTHORIZED,
        403: ErrorCode.FORBIDDEN,
        404: ErrorCode.NOT_FOUND,
        405: ErrorCode.VALIDATION_ERROR,
        422: ErrorCode.VALIDATION_ERROR,
        429: ErrorCode.RATE_LIMITED,
        503: ErrorCode.SERVICE_UNAVAILABLE,
    }

    code = status_to_code.get(exc.status_code, ErrorCode.DOWNSTREAM_FAILURE)
    message = exc.detail if isinstance(exc.detail, str) else "An error occurred"

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            code=code,
            message=message,
            request_id=getattr(request.state, "request_id", None),
        ),
        headers=getattr(exc, "headers", None),
    )
