"""Blob storage capability consumed by the download worker.

The real object store is an external collaborator; this module defines the
async interface the worker depends on plus a simulated implementation used
for local runs and tests.
"""

import asyncio
import random
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class UploadResult:
    key: str
    size: int


class StorageError(Exception):
    """Raised when the storage backend rejects or fails an operation."""


class BlobStorage(ABC):
    """Abstract async object storage."""

    @abstractmethod
    async def upload(self, file_id: int) -> UploadResult:
        """Fetch/generate the file and store it. Returns its key and size."""
        ...

    @abstractmethod
    async def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        """Return a time-limited download URL for a stored object."""
        ...

    async def health_check(self) -> bool:
        return True

    @staticmethod
    def key_for(file_id: int) -> str:
        """Object key for a file id. Only the integer part is used, so keys cannot traverse paths."""
        return f"downloads/{abs(int(file_id))}.zip"


class SimulatedBlobStorage(BlobStorage):
    """Storage stand-in that sleeps for a random duration per file.

    failure_rate makes a fraction of uploads raise StorageError, which is
    useful for exercising the retry path end to end.
    """

    def __init__(
        self,
        bucket: str = "downloads",
        min_delay: float = 1.0,
        max_delay: float = 3.0,
        failure_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        if min_delay < 0 or max_delay < min_delay:
            raise ValueError("expected 0 <= min_delay <= max_delay")
        self._bucket = bucket
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def upload(self, file_id: int) -> UploadResult:
        delay = self._rng.uniform(self._min_delay, self._max_delay)
        if delay > 0:
            await asyncio.sleep(delay)
        if self._failure_rate and self._rng.random() < self._failure_rate:
            raise StorageError(f"Simulated upload failure for file {file_id}")
        return UploadResult(
            key=self.key_for(file_id),
            size=self._rng.randint(1000, 10_000_000),
        )

    async def issue_access_url(self, key: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + ttl_seconds
        return (
            f"https://storage.example.com/{self._bucket}/{key}"
            f"?token={uuid.uuid4()}&expires={expires}"
        )
