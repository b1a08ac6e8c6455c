"""Test configuration and fixtures."""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from app.config import Settings
from app.jobs.exceptions import InvalidInputError
from app.jobs.store import JobRecordStore
from app.storage.blob_storage import BlobStorage, StorageError, UploadResult


class FakeStorage(BlobStorage):
    """Scriptable storage: per-file delays, scheduled failures, call tracking."""

    def __init__(
        self,
        delay: float = 0.0,
        delays: Optional[Dict[int, float]] = None,
        fail_ids: Iterable[int] = (),
        fail_first: int = 0,
        invalid_ids: Iterable[int] = (),
        healthy: bool = True,
    ):
        self.delay = delay
        self.delays = delays or {}
        self.fail_ids = set(fail_ids)
        self.fail_first = fail_first
        self.invalid_ids = set(invalid_ids)
        self.healthy = healthy
        self.calls: List[int] = []
        self.cancelled: List[int] = []
        self.urls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def upload(self, file_id: int) -> UploadResult:
        self.calls.append(file_id)
        call_no = len(self.calls)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self.delays.get(file_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if call_no <= self.fail_first:
                raise StorageError(f"transient failure on call {call_no}")
            if file_id in self.fail_ids:
                raise StorageError(f"upload failed for {file_id}")
            if file_id in self.invalid_ids:
                raise InvalidInputError(f"file {file_id} does not exist")
            return UploadResult(key=self.key_for(file_id), size=1024)
        except asyncio.CancelledError:
            self.cancelled.append(file_id)
            raise
        finally:
            self.active -= 1

    async def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        url = f"https://storage.test/{key}?ttl={ttl_seconds}"
        self.urls.append(url)
        return url

    async def health_check(self) -> bool:
        return self.healthy


@pytest.fixture
def make_storage():
    """Factory for FakeStorage instances."""
    return FakeStorage


@pytest.fixture
def store() -> JobRecordStore:
    return JobRecordStore(max_files_per_job=10, max_subscribers_per_job=3, max_pending_events=16)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        queue_concurrency=2,
        queue_max_retries=3,
        worker_batch_size=3,
        sse_heartbeat_seconds=5.0,
        cleanup_interval_seconds=0,
        storage_min_delay_seconds=0.0,
        storage_max_delay_seconds=0.0,
        log_level="DEBUG",
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Yield to the event loop until predicate() is true."""
    async def _wait():
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_wait(), timeout)


@pytest.fixture
def until():
    return wait_until
