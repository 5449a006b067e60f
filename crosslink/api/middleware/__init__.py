"""API middleware modules."""

from .security import RequestIDMiddleware, require_admin

__all__ = [
    "RequestIDMiddleware",
    "require_admin",
]
