"""Quay FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from quay import __version__
from quay.config import get_settings
from quay.db import close_db, init_db
from quay.errors import QuayError, ValidationError
from quay.services.gc.lifecycle import init_gc_scheduler, shutdown_gc_scheduler
from quay.services.http import http_client_manager
from quay.services.notifications import get_notification_dispatcher

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the database, webhook client and GC; stop them in reverse.

    Queued notifications are drained before the webhook client closes.
    """
    logger.info("quay.startup", version=__version__)
    await init_db()
    await http_client_manager.startup()
    await init_gc_scheduler()

    yield

    logger.info("quay.shutdown")
    await shutdown_gc_scheduler()
    await get_notification_dispatcher().drain()
    await http_client_manager.shutdown()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Quay",
        description="Resource hierarchy and storage consistency engine for shared upload links",
        version=__version__,
        lifespan=lifespan,
    )

    # Request ID middleware
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    # Error handlers
    @app.exception_handler(QuayError)
    async def quay_error_handler(request: Request, exc: QuayError):
        """Handle Quay errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed request bodies and parameters use the same envelope (400)."""
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return await quay_error_handler(
            request, ValidationError("Invalid request", details={"errors": errors})
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    from quay.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app on server.host / server.port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)
