"""Main entry point for the worker service (HTTP + background workers)."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from worker_service import __version__
from worker_service.config import get_settings
from worker_service.lib.json_logger import setup_logging
from worker_service.lifecycle import LifecycleController
from worker_service.routes import health, jobs, metrics

logger = logging.getLogger(__name__)

settings = get_settings()
setup_logging(level=settings.log_level, log_format=settings.log_format)


def create_app(controller: Optional[LifecycleController] = None) -> FastAPI:
    """Build the app; the lifespan starts the workers and shuts them down gracefully."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctrl = controller or LifecycleController(get_settings())
        # FatalError here aborts startup
        await ctrl.start()
        app.state.controller = ctrl
        logger.info("Background workers started")
        yield
        clean = await ctrl.shutdown()
        logger.info(f"Background workers stopped ({'clean' if clean else 'jobs abandoned'})")

    app = FastAPI(
        title="Worker Service",
        description="Background job processing for content, gazette generation and notifications",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(metrics.router, tags=["Metrics"])
    app.include_router(jobs.router, tags=["Jobs"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "worker-service",
            "version": __version__,
            "status": "running",
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "worker_service.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
