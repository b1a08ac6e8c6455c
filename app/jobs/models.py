"""Job, queue entry and event data models for async download processing."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.READY, JobStatus.FAILED)


# Legal status changes. Same-status updates (progress) are allowed separately
# while the job is not terminal.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.QUEUED, JobStatus.READY, JobStatus.FAILED},
    JobStatus.READY: set(),
    JobStatus.FAILED: set(),
}


class Job(BaseModel):
    """Tracks the lifecycle of one download request."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    file_ids: List[int]
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    download_url: Optional[str] = None
    storage_key: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_files(self) -> int:
        return len(self.file_ids)

    def to_status_dict(self) -> Dict[str, Any]:
        """Public projection shared by the poll and push channels."""
        return {
            "job_id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "download_url": self.download_url,
            "error": self.error,
            "total_files": self.total_files,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class JobEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobEventType.COMPLETED, JobEventType.FAILED)


@dataclass(frozen=True)
class JobEvent:
    """One state change emitted by the job store."""
    type: JobEventType
    job: Job
    emitted_at: datetime = field(default_factory=utcnow)


@dataclass
class QueueEntry:
    """Scheduling record for a job. Separate from the job itself."""
    job_id: str
    file_ids: List[int]
    attempts: int = 0
    enqueued_at: datetime = field(default_factory=utcnow)
