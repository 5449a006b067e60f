"""
Crosslink Identity - FastAPI Application

Cross-platform identity graph service. Provides:
- Identity resolution for platform accounts
- Code-based link verification
- Probabilistic matching (username, activity, shared rooms)
- Operator merge, unlink and audit endpoints
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from crosslink import __version__
from crosslink.api.middleware import RequestIDMiddleware
from crosslink.api.routes import health, identity
from crosslink.config import get_settings
from crosslink.db.client import close_db, init_db
from crosslink.kernel.http.errors import register_exception_handlers
from crosslink.kernel.logging_config import configure_logging

configure_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown."""
    settings = get_settings()

    logger.info(
        "Starting Crosslink Identity",
        version=__version__,
        environment=settings.environment,
    )

    await init_db()
    logger.info("PostgreSQL connection initialized")

    yield

    await close_db()
    logger.info("Crosslink Identity stopped")


app = FastAPI(
    title="Crosslink Identity",
    description="Cross-platform chat identity graph",
    version=__version__,
    lifespan=lifespan,
)

register_exception_handlers(app)

app.add_middleware(RequestIDMiddleware)

app.include_router(health.router, tags=["health"])
app.include_router(identity.router)
