"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from cutline import __version__
from cutline.api.routes import router
from cutline.config import Settings, settings as default_settings
from cutline.core import ClipCore

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, core: Optional[ClipCore] = None) -> FastAPI:
    """Build the ASGI app around one ClipCore."""
    settings = settings or (core.settings if core else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        # Startup
        logger.info(f"Starting {settings.app_name}...")
        app.state.core = core or ClipCore(settings)
        await app.state.core.start()

        yield

        # Shutdown
        logger.info(f"Shutting down {settings.app_name}...")
        await app.state.core.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        description="Manual and scene-based video clipping jobs",
        version=__version__,
        lifespan=lifespan
    )

    # Include API routes
    app.include_router(router, prefix="/api")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "app": settings.app_name,
            "version": __version__,
            "api": "/api",
            "docs": "/docs"
        }

    return app


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def run():
    """Serve the API with uvicorn."""
    import uvicorn

    configure_logging(default_settings)
    uvicorn.run(
        create_app(default_settings),
        host=default_settings.host,
        port=default_settings.port,
    )


if __name__ == "__main__":
    run()
