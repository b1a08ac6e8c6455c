"""Hybrid pull/push status distribution over the job store.

Poll clients read the store directly. Push clients get a JobStream that
starts with a snapshot frame and then forwards the job's events as typed
Server-Sent Events until a terminal frame is sent. Both channels read the
same store, so switching between them never shows older state.

SSE frames:
    connected  - snapshot sent when the stream opens
    progress   - non-terminal update
    completed  - job is ready, includes download_url
    failed     - job failed, includes error
    heartbeat  - keep-alive on a fixed interval
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Union

from app.jobs.exceptions import InvalidInputError, JobNotFoundError
from app.jobs.models import Job, JobEvent, JobEventType, utcnow
from app.jobs.store import JobRecordStore, JobSubscription
from app.logging.logger import Log


class StreamState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


class FrameType(str, Enum):
    CONNECTED = "connected"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    HEARTBEAT = "heartbeat"


_EVENT_FRAMES = {
    JobEventType.UPDATED: FrameType.PROGRESS,
    JobEventType.COMPLETED: FrameType.COMPLETED,
    JobEventType.FAILED: FrameType.FAILED,
}


@dataclass
class Frame:
    type: FrameType
    data: Dict[str, Any]
    retry_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (FrameType.COMPLETED, FrameType.FAILED)

    def encode(self) -> str:
        """Serialize as one Server-Sent Events message."""
        lines = [f"event: {self.type.value}"]
        if self.retry_ms is not None:
            lines.append(f"retry: {self.retry_ms}")
        lines.append(f"data: {json.dumps(self.data)}")
        return "\n".join(lines) + "\n\n"


def job_payload(job: Job, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "progress": job.progress,
        "download_url": job.download_url,
        "error": job.error,
        "timestamp": (timestamp or utcnow()).isoformat(),
    }


def validate_job_id(job_id: str) -> str:
    try:
        return str(uuid.UUID(job_id))
    except (ValueError, AttributeError, TypeError):
        raise InvalidInputError(f"Invalid job id format: {job_id!r}")


@dataclass
class JobStream:
    """One push connection: connecting -> streaming -> closed."""

    store: JobRecordStore
    snapshot: Job
    subscription: JobSubscription
    heartbeat_seconds: float = 15.0
    retry_ms: int = 3000
    state: StreamState = field(default=StreamState.CONNECTING)

    @property
    def job_id(self) -> str:
        return self.snapshot.id

    def close(self) -> None:
        if self.state == StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        self.store.unsubscribe(self.subscription)
        Log.info(f"SSE client unsubscribed from job {self.job_id}")

    async def frames(self) -> AsyncIterator[Frame]:
        """Yield frames until a terminal frame, eviction or close().

        If the consumer stops iterating (client gone, write failed) the
        generator is closed and the subscription is released.
        """
        if self.state != StreamState.CONNECTING:
            raise RuntimeError(f"Stream for job {self.job_id} was already opened")
        self.state = StreamState.STREAMING
        loop = asyncio.get_running_loop()
        try:
            connected = job_payload(self.snapshot)
            connected["message"] = "Connected to job updates stream"
            yield Frame(FrameType.CONNECTED, connected, retry_ms=self.retry_ms)

            next_heartbeat = loop.time() + self.heartbeat_seconds
            while self.state == StreamState.STREAMING:
                timeout = max(0.0, next_heartbeat - loop.time())
                try:
                    event = await asyncio.wait_for(self.subscription.get(), timeout)
                except asyncio.TimeoutError:
                    yield Frame(FrameType.HEARTBEAT, self._heartbeat_payload())
                    next_heartbeat = loop.time() + self.heartbeat_seconds
                    continue

                if event is None:
                    # Closed by the store (eviction or job deleted).
                    break
                frame = self._frame_for(event)
                if frame is None:
                    continue
                yield frame
                if frame.is_terminal:
                    break
        finally:
            self.close()

    def _heartbeat_payload(self) -> Dict[str, Any]:
        payload = job_payload(self.store.get(self.job_id) or self.snapshot)
        payload["message"] = "heartbeat"
        return payload

    async def sse(self) -> AsyncIterator[str]:
        async for frame in self.frames():
            yield frame.encode()

    @staticmethod
    def _frame_for(event: JobEvent) -> Optional[Frame]:
        frame_type = _EVENT_FRAMES.get(event.type)
        if frame_type is None:
            return None
        return Frame(frame_type, job_payload(event.job, event.emitted_at))


class NotificationBridge:
    """Serves the poll read path and opens push streams over one store."""

    def __init__(
        self,
        store: JobRecordStore,
        heartbeat_seconds: float = 15.0,
        poll_cache_seconds: int = 2,
        terminal_cache_seconds: int = 3600,
    ):
        self._store = store
        self._heartbeat_seconds = heartbeat_seconds
        self._poll_cache_seconds = poll_cache_seconds
        self._terminal_cache_seconds = terminal_cache_seconds

    def poll(self, job_id: str) -> Job:
        try:
            job_id = validate_job_id(job_id)
        except InvalidInputError:
            raise JobNotFoundError(f"Job {job_id} not found")
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def cache_control(self, job: Job) -> str:
        """Terminal state never changes, so it may be cached for long."""
        if job.is_terminal:
            return f"public, max-age={self._terminal_cache_seconds}, immutable"
        return f"public, max-age={self._poll_cache_seconds}"

    def open_stream(self, job_id: str) -> Union[Job, JobStream]:
        """Return a JobStream, or the Job itself if it has already finished.

        Raises InvalidInputError for a malformed id and JobNotFoundError for
        an unknown one.
        """
        job_id = validate_job_id(job_id)
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.is_terminal:
            return job

        subscribed = self._store.subscribe(job_id)
        if subscribed is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        snapshot, subscription = subscribed
        Log.info(f"SSE client subscribed to job {job_id}")
        return JobStream(
            store=self._store,
            snapshot=snapshot,
            subscription=subscription,
            heartbeat_seconds=self._heartbeat_seconds,
        )
