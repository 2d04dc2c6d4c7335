"""
FastAPI application for the admission engine.

- CORS configuration
- Engine errors mapped to `{error, code}` responses
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admission_engine import __version__
from admission_engine.config import Settings, get_settings
from admission_engine.core.errors import EngineError
from admission_engine.database.connection import close_db, get_session_factory, init_db
from admission_engine.factory import build_engine
from admission_engine.integrations.provider import PaymentProvider
from admission_engine.monitoring.logging import setup_logging

from .routes import application_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[PaymentProvider] = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Optional settings (uses cached settings if not provided)
        session_factory: Optional session factory; when given, the caller owns
            the schema and connections
        provider: Optional payment provider (Paystack client by default)
    """
    settings = settings or get_settings()
    setup_logging(settings)
    owns_database = session_factory is None
    session_factory = session_factory or get_session_factory(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )
        if owns_database:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        await app.state.engine.close()
        if owns_database:
            await close_db()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Admission Engine",
        description=(
            "Application and payment reconciliation for capacity-limited programs: "
            "slot allocation, application lifecycle, Paystack payments and webhooks."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.engine = build_engine(settings, session_factory, provider)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request ID into the logging context and echo it back."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_rejected",
            code=exc.code,
            error=exc.message,
            status_code=exc.status_code,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error", "code": "INTERNAL_ERROR"},
        )

    app.include_router(application_router)
    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "admission_engine.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
