"""Async Download Service - FastAPI application."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings as default_settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.jobs.service import DownloadService
from app.logging.logger import Log
from app.storage.blob_storage import BlobStorage, SimulatedBlobStorage


def build_storage(settings: Settings) -> BlobStorage:
    return SimulatedBlobStorage(
        bucket=settings.storage_bucket,
        min_delay=settings.storage_min_delay_seconds,
        max_delay=settings.storage_max_delay_seconds,
        failure_rate=settings.storage_failure_rate,
    )


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[BlobStorage] = None,
) -> FastAPI:
    """Build an app with its own service instance (one per app, none global)."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        Log.configure(settings.log_level)
        Log.info(f"Starting {settings.app_name} on port {settings.port}")
        Log.info(
            f"Queue concurrency: {settings.queue_concurrency}, "
            f"max retries: {settings.queue_max_retries}, "
            f"batch size: {settings.worker_batch_size}"
        )

        service = DownloadService(settings, storage or build_storage(settings))
        await service.start()
        app.state.service = service

        yield

        Log.info(f"Shutting down {settings.app_name}")
        await service.shutdown()
        app.state.service = None

    app = FastAPI(
        title=settings.app_name,
        description="Long-running downloads processed in the background, "
        "followed by polling or Server-Sent Events",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_root_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /api/v1/* endpoints
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=default_settings.port)
