"""Application factory and top-level wiring.

``create_app`` assembles configuration, logging, schema setup, middleware,
routers and error handlers. ``app`` is the instance served by uvicorn.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .core.errors import (
    ArchiveServiceError,
    http_exception_handler,
    service_error_handler,
    validation_exception_handler,
)
from .core.logging import configure_logging
from .core.settings import AppSettings, get_settings
from .db.migrate import run_migrations
from .db.session import Base, engine
from .middlewares import RequestIdMiddleware

# Importing the models registers their tables on ``Base.metadata``.
from .models import item as _item  # noqa: F401
from .models import sync_job as _sync_job  # noqa: F401
from .routers import api_items, api_vectors

logger = logging.getLogger(__name__)


def init_schema() -> None:
    """Create missing tables, then apply additive migrations."""

    Base.metadata.create_all(bind=engine)
    run_migrations(engine)


def create_app(settings: AppSettings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if settings.AUTO_CREATE_SCHEMA:
            init_schema()
        logger.info(
            "app.started",
            extra={"extra_data": {"env": settings.APP_ENV, "vector_sync_mode": settings.VECTOR_SYNC_MODE}},
        )
        yield

    app = FastAPI(title=settings.APP_NAME, version=__version__, lifespan=lifespan)

    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_items.router)
    app.include_router(api_vectors.router)

    app.add_exception_handler(ArchiveServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    if settings.METRICS_ENABLED:
        # Metrics register on the process-wide prometheus registry, so only
        # one app per process may enable them.
        Instrumentator().instrument(app).expose(app)

    return app


_settings = get_settings()
configure_logging(_settings.LOG_LEVEL, service=_settings.APP_NAME, env=_settings.APP_ENV)
app = create_app(_settings)

__all__ = ["app", "create_app", "init_schema"]
