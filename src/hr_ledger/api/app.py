"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hr_ledger.api.routes import (
    approvals_router,
    health_router,
    payroll_run_employees_router,
    payroll_runs_router,
)
from hr_ledger.config import Settings, get_settings
from hr_ledger.database import create_schema, dispose_db, init_db
from hr_ledger.events import DomainEvent, EventEmitter
from hr_ledger.exceptions import (
    ConcurrentModificationError,
    EngineError,
    InvalidStateError,
    NotAuthorizedError,
    NotFoundError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)

# Most specific first; ConcurrentModificationError is checked before the rest
ERROR_STATUS: list[tuple[type[EngineError], int]] = [
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (ValidationFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def status_for(exc: EngineError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def _log_event(event: DomainEvent) -> None:
    logger.info("Event %s: %s", event.event_type, event.to_json())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    init_db()
    if app.state.settings.create_schema:
        await create_schema()
    yield
    # Shutdown
    await dispose_db()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    app = FastAPI(
        title="HR Ledger Engine API",
        description="Approval workflows and payroll run ledger",
        version=settings.engine_version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Notification sink; deployments register further handlers on this emitter
    app.state.emitter = EventEmitter()
    app.state.emitter.on_all(_log_event)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        """Map engine errors onto HTTP status codes."""
        code = status_for(exc)
        logger.warning("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(
            status_code=code,
            content={
                "detail": exc.message,
                "code": exc.code,
                "retryable": exc.retryable,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(approvals_router, prefix="/api/v1")
    app.include_router(payroll_runs_router, prefix="/api/v1")
    app.include_router(payroll_run_employees_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
