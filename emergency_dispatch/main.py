"""
Emergency Dispatch - Main FastAPI Application
"""

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.database import init_db, close_db
from emergency_dispatch.core.redis import init_redis, close_redis
from emergency_dispatch.api.v1.router import api_router
from emergency_dispatch.core.exceptions import setup_exception_handlers
from emergency_dispatch.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from emergency_dispatch.core.metrics import metrics_collector
from emergency_dispatch.core.metrics_middleware import MetricsMiddleware
from emergency_dispatch.core.logging import get_logger, setup_logging, SERVICE_NAME, SERVICE_VERSION
from emergency_dispatch.services.dispatch_service import build_dispatch_service

# Initialize logging system
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info(
        "Starting Emergency Dispatch API",
        storage_backend=settings.STORAGE_BACKEND,
        notification_backend=settings.NOTIFICATION_BACKEND
    )
    if settings.STORAGE_BACKEND == "database":
        await init_db()
    if settings.NOTIFICATION_BACKEND == "redis":
        await init_redis()

    app.state.dispatch_service = build_dispatch_service()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down Emergency Dispatch API")
    if settings.NOTIFICATION_BACKEND == "redis":
        await close_redis()
    if settings.STORAGE_BACKEND == "database":
        await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Emergency Dispatch API",
        description="""
        ## Emergency Dispatch API

        Matches emergency requests (ambulance, fire, police) to the nearest
        available responder and tracks each request until it is completed.

        - **Requests**: submit, track and cancel emergency requests
        - **Dispatch**: nearest-responder assignment with distance and ETA
        - **Notifications**: assignment offers delivered through polling
        - **Responders**: location updates, availability and proximity lookups

        ### Authentication

        Bearer JWT issued by the identity service. The `sub` claim is the
        principal id and `role` is one of `user`, `responder` or `admin`.

        ### Error Handling

        All errors follow a consistent format with error codes, messages, and contextual details.
        """,
        version=SERVICE_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_tags=[
            {
                "name": "emergency",
                "description": "Emergency request submission, dispatch and status tracking"
            },
            {
                "name": "notifications",
                "description": "Responder assignment offers"
            },
            {
                "name": "responders",
                "description": "Responder registration, location and availability"
            }
        ],
        lifespan=lifespan,
    )

    # Middleware (order matters - last added is executed first)
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # Metrics middleware (if enabled)
    if settings.METRICS_ENABLED:
        app.add_middleware(MetricsMiddleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": SERVICE_NAME}

    if settings.METRICS_ENABLED:
        @app.get(settings.METRICS_PATH, include_in_schema=False)
        async def prometheus_metrics():
            return Response(
                content=metrics_collector.get_metrics(),
                media_type="text/plain; version=0.0.4; charset=utf-8"
            )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("emergency_dispatch.main:app", host=settings.API_HOST, port=settings.API_PORT)
