"""Health check endpoint."""

from fastapi import APIRouter, Request
import platform
import sys

from app.logging.logger import Log

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Service health, storage status, and system info."""
    service = getattr(request.app.state, "service", None)
    storage_ok = False
    if service is not None:
        try:
            storage_ok = await service.storage.health_check()
        except Exception as exc:
            Log.warning(f"Storage health check failed: {exc}")
            storage_ok = False

    return {
        "status": "healthy" if storage_ok else "degraded",
        "storage": "ok" if storage_ok else "unavailable",
        "queue": service.stats()["queue"] if service is not None else None,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
