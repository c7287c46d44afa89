"""Flash telemetry API - FastAPI application"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from webflasher.api.v1.router import api_router
from webflasher.config import Settings, settings as default_settings
from webflasher.core.logging import setup_logging
from webflasher.middleware.security import EmptyPreflightCORSMiddleware, SecurityHeadersMiddleware
from webflasher.services.flash_stats import FlashStatsStore
from webflasher.services.guard_pipeline import GuardPipeline
from webflasher.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    settings: Settings = app.state.settings
    logger.info("Starting flash telemetry API server...")

    settings.data_path.mkdir(parents=True, exist_ok=True)
    if settings.CHECK_MARKER_FILE and not settings.marker_path.exists():
        logger.warning(
            f"Marker file {settings.MARKER_FILE} not found in {settings.DATA_DIR}; "
            "telemetry writes will answer 503 until it is created"
        )

    logger.info("Application started successfully")

    yield

    logger.info("Application shut down successfully")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around one settings instance"""
    settings = settings or default_settings

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Flash counters and error log for the ESP web flasher",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    store = FlashStatsStore(
        counts_path=settings.counts_path,
        errors_path=settings.errors_path,
        max_entries=settings.ERROR_LOG_MAX_ENTRIES,
        max_counts_bytes=settings.MAX_COUNTS_FILE_BYTES,
        max_errors_bytes=settings.MAX_ERRORS_FILE_BYTES,
    )
    rate_limiter = RateLimiter(
        path=settings.rate_limit_path,
        salt=settings.RATE_LIMIT_SALT,
        per_minute=settings.RATE_LIMIT_PER_MINUTE,
        per_hour=settings.RATE_LIMIT_PER_HOUR,
    )
    app.state.settings = settings
    app.state.flash_stats = store
    app.state.rate_limiter = rate_limiter
    app.state.guard_pipeline = GuardPipeline(settings, store, rate_limiter)

    app.add_middleware(SecurityHeadersMiddleware)

    # Reads are public; the write endpoint checks Origin/Referer itself
    app.add_middleware(
        EmptyPreflightCORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "healthy",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if settings.DEBUG else "An error occurred",
            },
        )

    return app


setup_logging()
app = create_app()


def run():
    """Console entry point"""
    import uvicorn

    uvicorn.run(
        "webflasher.main:app",
        host=default_settings.PY_HOST,
        port=default_settings.PY_PORT,
        reload=default_settings.DEBUG,
        log_config=None,  # Use our custom logging
    )


if __name__ == "__main__":
    run()
