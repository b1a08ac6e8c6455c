"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from app.jobs.models import QueueEntry

Executor = Callable[[QueueEntry], Awaitable[Any]]
FailureHook = Callable[[QueueEntry, BaseException], Any]


@dataclass
class QueueStats:
    pending: int
    active: int
    concurrency: int
    running: bool


class JobDispatcher(ABC):
    """Abstract interface for scheduling queue entries onto an executor."""

    @abstractmethod
    def enqueue(self, job_id: str, file_ids: List[int]) -> QueueEntry:
        """Append an entry for the job and trigger dispatch."""
        ...

    @abstractmethod
    def register_executor(
        self,
        executor: Executor,
        on_retry: Optional[FailureHook] = None,
        on_exhausted: Optional[FailureHook] = None,
    ) -> None:
        """Install the per-entry handler. May only be called once."""
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def resume(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        """Stop dispatching and drop pending entries immediately."""
        ...

    @abstractmethod
    async def shutdown(self, timeout: float) -> bool:
        """Stop dispatching and wait for active entries. True if drained."""
        ...

    @abstractmethod
    def stats(self) -> QueueStats:
        ...
