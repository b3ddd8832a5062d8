"""Ordinal Launchpad Backend API - Main Application"""
import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.api.v1.router import api_router
from app.models.database import init_db, close_db
from app.services.chain_client import close_chain_client
from app.services.errors import LaunchpadError
from app.services.launchpad_scheduler import start_launchpad_scheduler, stop_launchpad_scheduler

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Ordinal Launchpad API", version=settings.app_version)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Phase timing, reservation expiry and confirmation polling
    if settings.scheduler_enabled:
        await start_launchpad_scheduler(interval_seconds=settings.scheduler_interval_seconds)
    else:
        logger.warning("Launchpad scheduler disabled - jobs must be triggered through /cron")

    yield

    # Cleanup
    await stop_launchpad_scheduler()
    await close_chain_client()
    await close_db()
    logger.info("Ordinal Launchpad API shutdown complete")


async def launchpad_error_handler(request: Request, exc: LaunchpadError) -> JSONResponse:
    """Domain errors map to their HTTP status with a stable error code"""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


def create_app() -> FastAPI:
    """Create FastAPI application"""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="API for the ordinals mint launchpad",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LaunchpadError, launchpad_error_handler)

    # Include routers
    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "scheduler_enabled": settings.scheduler_enabled,
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
