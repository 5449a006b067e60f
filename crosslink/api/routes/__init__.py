"""API route modules."""

from . import health, identity

__all__ = [
    "health",
    "identity",
]
