"""Download worker: executes one queue entry against blob storage.

Connects the scheduler, the job store and the storage capability. Files are
processed in fixed-size batches whose members run concurrently; a batch
succeeds or fails as a unit. A retried attempt starts again from the first
batch.
"""

import asyncio
from typing import Iterator, List

from app.jobs.exceptions import (
    InvalidInputError,
    InvalidTransitionError,
    TerminalProcessingError,
    TransientProcessingError,
)
from app.jobs.models import JobStatus, QueueEntry, utcnow
from app.jobs.store import JobRecordStore
from app.logging.logger import Log
from app.storage.blob_storage import BlobStorage, UploadResult


def batches(file_ids: List[int], size: int) -> Iterator[List[int]]:
    for start in range(0, len(file_ids), size):
        yield file_ids[start:start + size]


def percent(done: int, total: int) -> int:
    """done/total as a percentage, rounded half up."""
    return (done * 200 + total) // (2 * total)


class DownloadWorker:
    """Drives a job from queued to ready, one attempt per call to execute()."""

    def __init__(
        self,
        store: JobRecordStore,
        storage: BlobStorage,
        batch_size: int = 3,
        url_ttl_seconds: int = 3600,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._storage = storage
        self._batch_size = batch_size
        self._url_ttl = url_ttl_seconds

    async def execute(self, entry: QueueEntry) -> None:
        job_id = entry.job_id
        job = self._store.get(job_id)
        if job is None:
            raise TerminalProcessingError(f"Job not found: {job_id}")
        if job.is_terminal:
            Log.warning(f"Skipping stale delivery of job {job_id} ({job.status.value})")
            return

        Log.info(f"Starting job {job_id} (attempt {entry.attempts})")
        self._store.update(
            job_id,
            status=JobStatus.PROCESSING,
            processing_started_at=job.processing_started_at or utcnow(),
        )

        total = len(entry.file_ids)
        done = 0
        results: List[UploadResult] = []
        for batch in batches(entry.file_ids, self._batch_size):
            Log.debug(
                f"Job {job_id}: processing files {done + 1}-{done + len(batch)}/{total}"
            )
            results.extend(await self._run_batch(job_id, batch))
            done += len(batch)
            self._store.update(job_id, progress=percent(done, total))

        final_key = results[-1].key
        try:
            download_url = await self._storage.issue_access_url(final_key, self._url_ttl)
        except Exception as exc:
            raise TransientProcessingError(
                f"Could not issue download URL for {final_key}: {exc}"
            ) from exc

        self._store.update(
            job_id,
            status=JobStatus.READY,
            progress=100,
            download_url=download_url,
            storage_key=final_key,
            completed_at=utcnow(),
        )
        Log.info(f"Job {job_id} is ready")

    async def _run_batch(self, job_id: str, batch: List[int]) -> List[UploadResult]:
        """Upload every file in the batch concurrently; the first failure cancels the rest."""
        tasks = [asyncio.ensure_future(self._storage.upload(file_id)) for file_id in batch]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        failed = [task for task in done if task.exception() is not None]
        if failed:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            exc = failed[0].exception()
            if isinstance(exc, InvalidInputError):
                raise TerminalProcessingError(f"Job {job_id}: {exc}") from exc
            raise TransientProcessingError(
                f"Batch {batch} failed for job {job_id}: {exc}"
            ) from exc

        return [task.result() for task in tasks]

    def requeue(self, entry: QueueEntry, exc: BaseException) -> None:
        """on_retry hook: put a processing job back to queued."""
        job = self._store.get(entry.job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return
        self._store.update(entry.job_id, status=JobStatus.QUEUED)

    def fail(self, entry: QueueEntry, exc: BaseException) -> None:
        """on_exhausted hook: record the failure on the job. Progress is left as-is."""
        job = self._store.get(entry.job_id)
        if job is None or job.is_terminal:
            return
        message = str(exc) or type(exc).__name__
        try:
            self._store.update(
                entry.job_id,
                status=JobStatus.FAILED,
                error=f"{message} (after {entry.attempts} attempt(s))",
                completed_at=utcnow(),
            )
        except InvalidTransitionError as err:
            Log.error(f"Could not mark job {entry.job_id} failed: {err}")
            return
        Log.error(f"Job {entry.job_id} failed: {message}")
