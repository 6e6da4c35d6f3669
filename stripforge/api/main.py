"""Stripforge API - comic strip job orchestration service.

Accepts a story and a cast of characters, drives the job through
segmentation, character cartoonification, panel backgrounds and
composition, and serves the composed images.

Run with:
    uvicorn stripforge.api.main:app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from stripforge import __version__
from stripforge.api.routes import jobs, webhooks
from stripforge.config import Settings
from stripforge.jobs.factory import build_orchestrator
from stripforge.jobs.orchestrator import Orchestrator
from stripforge.jobs.schemas import JobStatus
from stripforge.jobs.sweeper import StallSweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.getLogger("stripforge").setLevel(settings.log_level.upper())
    orchestrator = orchestrator or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        settings.state_dir.mkdir(parents=True, exist_ok=True)
        settings.output_dir.mkdir(parents=True, exist_ok=True)

        jobs_in_flight = orchestrator.store.list_jobs(status=JobStatus.PROCESSING)
        logger.info(
            f"State in {settings.state_dir}: {len(jobs_in_flight)} jobs processing, "
            f"{orchestrator.store.count_handles()} pending handles"
        )

        sweeper = None
        if settings.sweep_interval > 0:
            sweeper = StallSweeper(orchestrator, settings.item_timeout, settings.sweep_interval)
            sweeper.start()

        logger.info(f"Stripforge API ready (env={settings.environment})")
        yield
        # Shutdown
        if sweeper is not None:
            sweeper.stop()
        logger.info("Shutting down Stripforge API")

    app = FastAPI(
        title="Stripforge API",
        description="""
## Comic strip job orchestration

- `POST /v1/jobs` - Start a job from a story and characters
- `GET /v1/jobs/{job_id}` - Poll status, progress and output URLs
- `POST /v1/webhooks/inference` - Inference provider callbacks
- `GET /generated/{file}` - Composed panels and strips
""",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers with /v1 prefix
    app.include_router(jobs.router, prefix="/v1")
    app.include_router(webhooks.router, prefix="/v1")

    app.mount(
        "/generated",
        StaticFiles(directory=str(settings.output_dir), check_dir=False),
        name="generated",
    )

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Stripforge API",
            "version": __version__,
            "docs": "/docs",
            "endpoints": {
                "jobs": "/v1/jobs",
                "webhooks": "/v1/webhooks/inference",
                "generated": "/generated",
            },
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "environment": settings.environment,
            "pending_handles": orchestrator.store.count_handles(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stripforge.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
