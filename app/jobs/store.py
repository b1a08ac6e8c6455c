"""In-memory job store: the single writer of job state and its event source.

All methods are synchronous and never await, so under the asyncio event loop
every create/update/subscribe call is atomic. Events are fanned out to
subscribers inside the same call that applied the change, which gives each
job a total event order equal to its update order.
"""

import asyncio
import uuid
from collections import OrderedDict
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from app.jobs.exceptions import InvalidInputError, InvalidTransitionError, StreamDeliveryError
from app.jobs.models import (
    ALLOWED_TRANSITIONS,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    utcnow,
)
from app.logging.logger import Log

_UPDATABLE_FIELDS = {
    "status",
    "progress",
    "download_url",
    "storage_key",
    "error",
    "processing_started_at",
    "completed_at",
}


class JobSubscription:
    """A bounded buffer of events for one push consumer.

    ``job_id`` is None for a subscription to the global stream.
    """

    def __init__(self, job_id: Optional[str], max_pending: int = 256):
        self.id = str(uuid.uuid4())
        self.job_id = job_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._max_pending = max_pending
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: JobEvent) -> None:
        if self._closed:
            raise StreamDeliveryError(f"Subscription {self.id} is closed")
        if self._queue.qsize() >= self._max_pending:
            # Drop the oldest buffered event; the newest state always gets through.
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop delivery and wake any waiting consumer."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def get(self) -> Optional[JobEvent]:
        """Next event, or None once the subscription has been closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()


class JobRecordStore:
    """Authoritative map of job id -> Job with a per-job subscriber registry."""

    def __init__(
        self,
        max_files_per_job: int = 1000,
        max_subscribers_per_job: int = 100,
        max_pending_events: int = 256,
    ):
        self._jobs: Dict[str, Job] = {}
        self._subscribers: Dict[Optional[str], "OrderedDict[str, JobSubscription]"] = {}
        self._max_files = max_files_per_job
        self._max_subscribers = max_subscribers_per_job
        self._max_pending = max_pending_events

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, file_ids: Sequence[int]) -> Job:
        if not file_ids:
            raise InvalidInputError("file_ids must not be empty")
        if len(file_ids) > self._max_files:
            raise InvalidInputError(
                f"file_ids has {len(file_ids)} entries (max {self._max_files})"
            )

        job = Job(file_ids=list(file_ids))
        while job.id in self._jobs:
            job = Job(file_ids=list(file_ids))
        self._jobs[job.id] = job
        Log.info(f"Created job {job.id} with {job.total_files} file(s)")

        self._emit(JobEvent(JobEventType.CREATED, job))
        return job

    def update(self, job_id: str, **fields) -> Optional[Job]:
        """Apply a partial update and emit exactly one event.

        Returns None for an unknown job. Raises InvalidTransitionError, with
        nothing applied, for any update that would break the state machine.
        """
        current = self._jobs.get(job_id)
        if current is None:
            Log.warning(f"Attempted to update non-existent job {job_id}")
            return None

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {sorted(unknown)}")
        if current.is_terminal:
            raise InvalidTransitionError(
                f"Job {job_id} is {current.status.value}; terminal state is write-once"
            )

        changes = dict(fields)
        status = JobStatus(changes.pop("status", current.status))
        if status != current.status and status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(
                f"Job {job_id}: {current.status.value} -> {status.value} is not allowed"
            )

        download_url = changes.get("download_url")
        error = changes.get("error")
        if status == JobStatus.READY and not download_url:
            raise InvalidTransitionError(f"Job {job_id}: ready requires download_url")
        if status == JobStatus.FAILED and not error:
            raise InvalidTransitionError(f"Job {job_id}: failed requires error")
        if download_url is not None and status != JobStatus.READY:
            raise InvalidTransitionError(f"Job {job_id}: download_url is only set on ready")
        if error is not None and status != JobStatus.FAILED:
            raise InvalidTransitionError(f"Job {job_id}: error is only set on failed")

        progress = int(changes.pop("progress", current.progress))
        if not 0 <= progress <= 100:
            raise InvalidTransitionError(f"Job {job_id}: progress {progress} out of range")
        # High-water mark: a restarted attempt never makes progress go backwards.
        progress = max(progress, current.progress)
        if status == JobStatus.READY:
            progress = 100

        updated = current.model_copy(
            update={**changes, "status": status, "progress": progress, "updated_at": utcnow()}
        )
        self._jobs[job_id] = updated
        Log.debug(
            f"Updated job {job_id}: status={updated.status.value}, progress={updated.progress}%"
        )

        if status == JobStatus.READY:
            event_type = JobEventType.COMPLETED
        elif status == JobStatus.FAILED:
            event_type = JobEventType.FAILED
        else:
            event_type = JobEventType.UPDATED
        self._emit(JobEvent(event_type, updated))

        if event_type.is_terminal:
            # Nothing more will ever be emitted for this job.
            self._close_subscribers(job_id)
        return updated

    def delete(self, job_id: str) -> bool:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        self._close_subscribers(job_id)
        Log.info(f"Deleted job {job_id}")
        return True

    def cleanup(self, max_age_seconds: float) -> int:
        """Remove terminal jobs not updated within max_age_seconds."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.updated_at < cutoff
        ]
        for job_id in expired:
            self.delete(job_id)
        if expired:
            Log.info(f"Cleaned up {len(expired)} old job(s)")
        return len(expired)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_all(self) -> List[Job]:
        return list(self._jobs.values())

    def list_by_status(self, status: JobStatus) -> List[Job]:
        status = JobStatus(status)
        return [job for job in self._jobs.values() if job.status == status]

    def stats(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return {"total": len(self._jobs), **counts}

    def __len__(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self, job_id: Optional[str] = None
    ) -> Optional[Tuple[Optional[Job], JobSubscription]]:
        """Register a subscriber and return it with a snapshot of the job.

        Snapshot and registration happen in one step, so no event can fall
        between them. Returns None for an unknown job. With job_id=None the
        subscription receives every job's events and the snapshot is None.
        """
        snapshot = None
        if job_id is not None:
            snapshot = self._jobs.get(job_id)
            if snapshot is None:
                return None

        subs = self._subscribers.setdefault(job_id, OrderedDict())
        while len(subs) >= self._max_subscribers:
            _, oldest = subs.popitem(last=False)
            oldest.close()
            Log.warning(f"Evicted oldest subscriber {oldest.id} of {job_id or 'global stream'}")

        subscription = JobSubscription(job_id, max_pending=self._max_pending)
        subs[subscription.id] = subscription
        return snapshot, subscription

    def unsubscribe(self, subscription: JobSubscription) -> None:
        subscription.close()
        subs = self._subscribers.get(subscription.job_id)
        if subs is None:
            return
        subs.pop(subscription.id, None)
        if not subs:
            del self._subscribers[subscription.job_id]

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        return len(self._subscribers.get(job_id, ()))

    def _emit(self, event: JobEvent) -> None:
        for key in (event.job.id, None):
            subs = self._subscribers.get(key)
            if not subs:
                continue
            for subscription in list(subs.values()):
                try:
                    subscription.deliver(event)
                except StreamDeliveryError as exc:
                    Log.debug(f"Dropping subscriber: {exc}")
                    self.unsubscribe(subscription)

    def _close_subscribers(self, job_id: str) -> None:
        subs = self._subscribers.pop(job_id, None)
        if not subs:
            return
        for subscription in subs.values():
            subscription.close()
