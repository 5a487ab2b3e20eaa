"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine import __version__
from billing_engine.api.routes import (
    alerts_router,
    expenses_router,
    financials_router,
    health_router,
    invoices_router,
    payouts_router,
    rates_router,
    time_entries_router,
    timers_router,
)
from billing_engine.config import configure_logging, get_settings
from billing_engine.database import create_schema, dispose_db, init_db
from billing_engine.errors import EngineError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    settings = get_settings()
    init_db()
    if settings.database_url.startswith("sqlite"):
        await create_schema()
    logger.info("Billing engine %s started", __version__)
    yield
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging()
    app = FastAPI(
        title="Billing Engine API",
        description="Time tracking, rates, project financials, invoicing and payouts",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        """Map business errors to their HTTP status with a ``detail`` message."""
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    app.include_router(health_router)
    for router in (
        timers_router,
        time_entries_router,
        rates_router,
        financials_router,
        expenses_router,
        invoices_router,
        payouts_router,
        alerts_router,
    ):
        app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
