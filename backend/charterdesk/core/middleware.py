"""Security middleware for token redaction and logging protection.

Raw action link tokens are bearer capabilities: anyone holding the URL and
the bound email can act on the link. They must never appear in logs, error
traces, or referrer headers.
"""

import logging
import re
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Shareable link path: /action/{raw_token}
ACTION_PATH_PATTERN = re.compile(r"(/action/)([A-Za-z0-9_-]{8,})")

# token=... query parameters and "token": "..." JSON fragments
TOKEN_FIELD_PATTERN = re.compile(
    r"""((?:raw_token|captchaToken|captcha_token|token)["']?\s*[=:]\s*["']?)([A-Za-z0-9_.-]{8,})""",
    re.IGNORECASE,
)
TOKEN_REDACTED = "[TOKEN_REDACTED]"

ACTION_ROUTE_PREFIXES = ("/action/", "/api/v1/action-links")


def redact_tokens(text: str) -> str:
    """Replace raw tokens in a URL, path, or log line with [TOKEN_REDACTED]."""
    text = ACTION_PATH_PATTERN.sub(rf"\1{TOKEN_REDACTED}", text)
    return TOKEN_FIELD_PATTERN.sub(rf"\1{TOKEN_REDACTED}", text)


def is_action_link_path(path: str) -> bool:
    """Check if a path belongs to the action link surface."""
    return path.startswith(ACTION_ROUTE_PREFIXES)


class TokenRedactionFilter(logging.Filter):
    """Logging filter that redacts raw action link tokens from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            # A prefix in msg and a token in args only match once joined
            record.msg = redact_tokens(record.getMessage())
            record.args = ()
        elif isinstance(record.msg, str):
            record.msg = redact_tokens(record.msg)

        # Always allow the record through (after redaction)
        return True


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add standard security headers to all responses.

    API responses additionally get a restrictive CSP and no-store caching.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        # CSP is preferred over the legacy XSS auditor
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), geolocation=(), microphone=(), payment=(), usb=()"
        )

        if request.url.path.startswith("/api/"):
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none'"
            )
            if "Cache-Control" not in response.headers:
                response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"

        return response


class TokenRedactionMiddleware(BaseHTTPMiddleware):
    """Send ``Referrer-Policy: no-referrer`` on every action link route.

    The public action page carries the raw token in its URL; any outbound
    navigation from it would otherwise leak the token via Referer.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        original_path = request.url.path

        response = await call_next(request)

        if is_action_link_path(original_path):
            response.headers["Referrer-Policy"] = "no-referrer"

        return response


def install_token_redaction_logging() -> None:
    """Install the token redaction filter on the root and framework loggers.

    Call during application startup.
    """
    redaction_filter = TokenRedactionFilter()

    logging.getLogger().addFilter(redaction_filter)

    # Loggers with their own handlers bypass root-level filters
    logger_names = [
        "uvicorn",
        "uvicorn.access",
        "uvicorn.error",
        "fastapi",
        "security.auth",
        "security.action_links",
        "charterdesk",
    ]

    for name in logger_names:
        logging.getLogger(name).addFilter(redaction_filter)


def redact_exception_args(exc: Exception) -> Exception:
    """Redact raw tokens from exception arguments in place."""
    if exc.args:
        exc.args = tuple(
            redact_tokens(arg) if isinstance(arg, str) else arg
            for arg in exc.args
        )
    return exc
