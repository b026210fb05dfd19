"""
FastAPI application entry point for POS Sync.
"""

# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from pos_sync import __version__
from pos_sync.api.middleware.error_handler import ErrorHandlerMiddleware, error_response
from pos_sync.api.middleware.tenant_context import TenantContextMiddleware
from pos_sync.api.routes import health, integrations, sync
from pos_sync.database.connection import init_db
from pos_sync.monitoring import MetricsMiddleware, get_metrics, setup_sentry
from pos_sync.monitoring.prometheus_metrics import metrics_endpoint
from pos_sync.utils.config import get_config
from pos_sync.utils.exceptions import PosSyncError
from pos_sync.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    setup_logging()
    logger.info("Starting POS Sync API...")

    config = get_config()
    if setup_sentry(environment=config.environment):
        logger.info("Sentry initialized")

    init_db()
    get_metrics()
    logger.info("POS Sync API started")

    yield

    logger.info("Shutting down POS Sync API...")


def create_app() -> FastAPI:
    config = get_config()

    app = FastAPI(
        title="POS Sync API",
        description="OAuth connections and catalog/inventory sync with external POS providers",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Custom middlewares (last added runs first)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(TenantContextMiddleware)

    prefix = "/api/v1/integrations/{provider}"
    app.include_router(integrations.router, prefix=prefix, tags=["Integrations"])
    app.include_router(sync.router, prefix=prefix, tags=["Sync"])
    app.include_router(health.router, prefix="/health", tags=["Health"])

    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], tags=["Monitoring"],
                      include_in_schema=False)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "name": "POS Sync API",
            "version": __version__,
            "status": "operational",
            "docs": "/docs",
        }

    @app.exception_handler(PosSyncError)
    async def pos_sync_exception_handler(request: Request, exc: PosSyncError):
        return error_response(exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )

    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run(
        "pos_sync.api.main:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
