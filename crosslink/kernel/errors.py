from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class CrosslinkError(Exception):
    """Base typed error for Crosslink.

    - Stable `code` for programmatic handling by callers.
    - Human-readable `message` the calling collaborator may relay.
    - Optional `meta` payload with safe-to-expose context.
    - `retryable` tells callers whether the same call may succeed later.
    """

    retryable = False

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid Crosslink error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        if self.retryable:
            payload["retryable"] = True
        return payload


class NotFoundError(CrosslinkError):
    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class ExpiredError(CrosslinkError):
    """A link request was observed past its deadline. Terminal."""

    def __init__(
        self,
        *,
        message: str = "Verification code expired",
        code: str = "verification.expired",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=410, meta=meta)


class ConcurrentModificationError(CrosslinkError):
    """A conditional write lost to another writer (e.g. code already consumed)."""

    def __init__(
        self,
        *,
        message: str = "Resource was modified concurrently",
        code: str = "request.conflict",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class IntegrityViolationError(CrosslinkError):
    """An identity graph invariant would be broken. Needs manual repair."""

    def __init__(
        self,
        *,
        message: str = "Identity graph integrity violation",
        code: str = "storage.integrity_violation",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=500, meta=meta)


class StorageUnavailableError(CrosslinkError):
    """The database could not be reached or timed out. Safe to retry."""

    retryable = True

    def __init__(
        self,
        *,
        message: str = "Identity store unavailable",
        code: str = "storage.unavailable",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=503, meta=meta)


class ValidationError(CrosslinkError):
    def __init__(
        self,
        *,
        message: str = "Validation error",
        code: str = "request.validation_error",
        meta: dict[str, Any] | None = None,
        status_code: int = 422,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class ForbiddenError(CrosslinkError):
    def __init__(
        self,
        *,
        message: str = "Forbidden",
        code: str = "auth.forbidden",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=403, meta=meta)
