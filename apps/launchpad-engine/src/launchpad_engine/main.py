"""LaunchPad Engine - Main FastAPI Application."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from launchpad_engine.api.v1.router import api_router
from launchpad_engine.core.config import settings
from launchpad_engine.core.database import close_db, init_db
from launchpad_engine.core.jobs import JobManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    logger.info("Starting LaunchPad Engine v%s", settings.VERSION)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    # Start job manager
    job_manager = JobManager.get_instance()
    await job_manager.start()
    logger.info("Job manager started")

    if not (settings.ASC_KEY_ID and settings.ASC_ISSUER_ID and settings.TEAM_ID):
        logger.warning("App Store Connect credentials are incomplete; builds will fail at signing")

    yield

    # Cleanup
    logger.info("Shutting down LaunchPad Engine...")
    await job_manager.stop()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="LaunchPad Engine",
        description="Expo iOS build and App Store Connect submission service",
        version=settings.VERSION,
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.DEBUG else settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        job_manager = JobManager.get_instance()
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "services": {
                "database": True,
                "workers": job_manager.running,
            },
        }

    # Include API router
    app.include_router(api_router, prefix="/v1")

    return app


# Create app instance
app = create_app()


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "launchpad_engine.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )


if __name__ == "__main__":
    main()
