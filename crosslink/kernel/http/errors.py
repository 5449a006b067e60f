"""
HTTP error mapping.

Every error leaves the API as `{"detail", "code", "request_id"?, "meta"?}` so
bot adapters can branch on `code` regardless of where the failure started.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from crosslink.kernel.errors import (
    CrosslinkError,
    IntegrityViolationError,
    StorageUnavailableError,
)

logger = structlog.get_logger()

STORAGE_RETRY_AFTER_SECONDS = 5


def _request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def _error_body(request: Request, detail: Any, code: str) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": detail, "code": code}
    request_id = _request_id(request)
    if request_id:
        body["request_id"] = request_id
    return body


async def handle_crosslink_error(request: Request, exc: CrosslinkError) -> Response:
    headers: dict[str, str] = {}
    if isinstance(exc, IntegrityViolationError):
        # Not retryable: the graph needs manual repair.
        logger.error("Identity graph integrity violation", code=exc.code, meta=exc.meta)
    elif isinstance(exc, StorageUnavailableError):
        headers["Retry-After"] = str(STORAGE_RETRY_AFTER_SECONDS)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_public_dict(request_id=_request_id(request)),
        headers=headers,
    )


async def handle_http_exception(request: Request, exc: HTTPException) -> Response:
    return JSONResponse(
        status_code=int(exc.status_code),
        content=_error_body(request, exc.detail, f"http.{exc.status_code}"),
        headers=dict(exc.headers or {}),
    )


async def handle_request_validation(request: Request, exc: RequestValidationError) -> Response:
    return JSONResponse(
        status_code=422,
        content=_error_body(request, exc.errors(), "http.validation_error"),
    )


async def handle_unexpected(request: Request, exc: Exception) -> Response:
    logger.exception("Unhandled exception", error=str(exc))
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "Internal Server Error", "internal.unhandled"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the Crosslink error envelope on a FastAPI app."""
    app.add_exception_handler(CrosslinkError, handle_crosslink_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
