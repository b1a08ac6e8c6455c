"""Download service: wires store, queue and worker together.

Submission creates the job record and its queue entry in one synchronous
step; if enqueueing fails the record is removed again, so a job never exists
without work scheduled for it.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from app.config import Settings
from app.jobs.exceptions import InvalidInputError
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.models import Job
from app.jobs.store import JobRecordStore
from app.jobs.worker import DownloadWorker
from app.logging.logger import Log
from app.notifications.bridge import NotificationBridge
from app.storage.blob_storage import BlobStorage


class DownloadService:
    """Owns one isolated instance of every core component."""

    def __init__(self, settings: Settings, storage: BlobStorage):
        self.settings = settings
        self.storage = storage
        self.store = JobRecordStore(
            max_files_per_job=settings.max_files_per_job,
            max_subscribers_per_job=settings.max_subscribers_per_job,
            max_pending_events=settings.max_pending_events,
        )
        self.queue = InProcessQueue(
            concurrency=settings.queue_concurrency,
            max_retries=settings.queue_max_retries,
            retry_backoff_seconds=settings.queue_retry_backoff_seconds,
        )
        self.worker = DownloadWorker(
            self.store,
            storage,
            batch_size=settings.worker_batch_size,
            url_ttl_seconds=settings.download_url_ttl_seconds,
        )
        self.bridge = NotificationBridge(
            self.store,
            heartbeat_seconds=settings.sse_heartbeat_seconds,
            poll_cache_seconds=settings.poll_cache_seconds,
            terminal_cache_seconds=settings.terminal_cache_seconds,
        )
        self._cleanup_task: Optional[asyncio.Task] = None
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self.queue.register_executor(
            self.worker.execute,
            on_retry=self.worker.requeue,
            on_exhausted=self.worker.fail,
        )
        if self.settings.cleanup_interval_seconds > 0:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._started = True
        Log.info("Download service started")

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        if timeout is None:
            timeout = self.settings.shutdown_timeout_seconds
        drained = await self.queue.shutdown(timeout)
        Log.info("Download service stopped")
        return drained

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def validate_file_ids(self, file_ids: Sequence[int]) -> List[int]:
        if not file_ids:
            raise InvalidInputError("file_ids must contain at least one id")
        if len(file_ids) > self.settings.max_files_per_job:
            raise InvalidInputError(
                f"file_ids may contain at most {self.settings.max_files_per_job} ids"
            )
        low, high = self.settings.min_file_id, self.settings.max_file_id
        for file_id in file_ids:
            if isinstance(file_id, bool) or not isinstance(file_id, int):
                raise InvalidInputError(f"file id {file_id!r} is not an integer")
            if not low <= file_id <= high:
                raise InvalidInputError(f"file id {file_id} is outside {low}..{high}")
        return list(file_ids)

    def submit(self, file_ids: Sequence[int]) -> Job:
        """Validate, create the job and enqueue it. Raises InvalidInputError."""
        file_ids = self.validate_file_ids(file_ids)
        job = self.store.create(file_ids)
        try:
            self.queue.enqueue(job.id, file_ids)
        except Exception:
            self.store.delete(job.id)
            raise
        Log.info(f"Queued job {job.id} with {len(file_ids)} file(s)")
        return job

    def submit_batch(self, requests: Sequence[Sequence[int]]) -> List[Job]:
        """Submit several jobs. Every request is validated before any job is created."""
        if not requests:
            raise InvalidInputError("jobs must contain at least one request")
        if len(requests) > self.settings.max_batch_jobs:
            raise InvalidInputError(
                f"at most {self.settings.max_batch_jobs} jobs per batch"
            )
        for file_ids in requests:
            self.validate_file_ids(file_ids)
        jobs = [self.submit(file_ids) for file_ids in requests]
        Log.info(f"Batch: {len(jobs)} jobs created")
        return jobs

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        queue = self.queue.stats()
        return {
            "queue": {
                "pending": queue.pending,
                "active": queue.active,
                "concurrency": queue.concurrency,
                "running": queue.running,
            },
            "jobs": self.store.stats(),
        }

    def cleanup(self) -> int:
        return self.store.cleanup(self.settings.job_retention_hours * 3600)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            try:
                self.cleanup()
            except Exception:
                Log.exception("Job cleanup failed")
