"""
Request tracing and admin access control.
"""

import secrets
from typing import Callable

import structlog
from fastapi import Depends, Header
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from crosslink.config import Settings, get_settings
from crosslink.kernel.errors import ForbiddenError

logger = structlog.get_logger()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Add unique request ID to all requests for tracing.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or secrets.token_hex(8)

        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        response.headers["X-Request-ID"] = request_id
        return response


async def require_admin(
    x_admin_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Dependency guarding operator-only endpoints.

    Refuses every request when no admin key is configured.
    """
    expected = settings.admin_api_key
    if not expected:
        raise ForbiddenError(
            message="Admin endpoints are disabled",
            code="auth.admin_disabled",
        )
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning("Rejected admin request")
        raise ForbiddenError(message="Invalid admin key", code="auth.invalid_admin_key")
