"""Download job API: submit jobs, poll status, subscribe to updates.

Two ways to follow a job:
  GET /downloads/{id}         poll; cache headers depend on status
  GET /downloads/{id}/events  Server-Sent Events until the job finishes
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from app.jobs.exceptions import InvalidInputError, JobNotFoundError
from app.jobs.models import Job
from app.jobs.service import DownloadService

router = APIRouter()

_API_PREFIX = "/api/v1"


def get_service(request: Request) -> DownloadService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Download service not initialized")
    return service


class DownloadRequest(BaseModel):
    file_ids: List[int]


class BatchDownloadRequest(BaseModel):
    jobs: List[DownloadRequest]


class DownloadAccepted(BaseModel):
    job_id: str
    status: str
    total_files: int
    status_url: str
    subscribe_url: str


class DownloadSubmitResponse(DownloadAccepted):
    message: str


class BatchDownloadResponse(BaseModel):
    jobs: List[DownloadAccepted]
    message: str


def _accepted(job: Job) -> dict:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "total_files": job.total_files,
        "status_url": f"{_API_PREFIX}/downloads/{job.id}",
        "subscribe_url": f"{_API_PREFIX}/downloads/{job.id}/events",
    }


@router.post("/downloads", status_code=202, response_model=DownloadSubmitResponse)
async def submit_download(
    request: DownloadRequest,
    service: DownloadService = Depends(get_service),
):
    """Start an async download job. Returns immediately with the job id."""
    try:
        job = service.submit(request.file_ids)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return DownloadSubmitResponse(
        **_accepted(job),
        message="Download job queued. Poll status_url or subscribe to subscribe_url.",
    )


@router.post("/downloads/batch", status_code=202, response_model=BatchDownloadResponse)
async def submit_download_batch(
    request: BatchDownloadRequest,
    service: DownloadService = Depends(get_service),
):
    """Create several download jobs in one call."""
    try:
        jobs = service.submit_batch([r.file_ids for r in request.jobs])
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return BatchDownloadResponse(
        jobs=[DownloadAccepted(**_accepted(job)) for job in jobs],
        message=f"{len(jobs)} jobs queued successfully",
    )


@router.get("/downloads/{job_id}")
async def get_download_status(
    job_id: str,
    response: Response,
    service: DownloadService = Depends(get_service),
):
    """Poll the current state of a job."""
    try:
        job = service.bridge.poll(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    response.headers["Cache-Control"] = service.bridge.cache_control(job)
    return job.to_status_dict()


@router.get("/downloads/{job_id}/events")
async def subscribe_download(
    job_id: str,
    service: DownloadService = Depends(get_service),
):
    """Stream job updates as Server-Sent Events.

    A job that has already finished is returned as plain JSON instead.
    """
    try:
        opened = service.bridge.open_stream(job_id)
    except InvalidInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    if isinstance(opened, Job):
        body = opened.to_status_dict()
        body["message"] = "Job already finished. No stream needed."
        return body

    return StreamingResponse(
        opened.sse(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/queue/stats")
async def get_queue_stats(service: DownloadService = Depends(get_service)):
    """Pending/active queue entries and job counts by status."""
    return service.stats()
