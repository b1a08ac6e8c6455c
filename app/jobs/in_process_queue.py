"""In-process bounded job queue using asyncio.

Entries are dispatched FIFO up to a concurrency ceiling. Failed attempts are
re-appended to the tail until max_retries attempts have been made.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
from collections import deque
from typing import Deque, List, Optional, Set

from app.jobs.dispatcher import Executor, FailureHook, JobDispatcher, QueueStats
from app.jobs.exceptions import TerminalProcessingError
from app.jobs.models import QueueEntry
from app.logging.logger import Log


class InProcessQueue(JobDispatcher):
    """Local async job queue with a concurrency ceiling and retry."""

    def __init__(
        self,
        concurrency: int = 5,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.0,
    ):
        """
        concurrency: max entries executing at once.
        max_retries: max attempts per entry, first attempt included.
        retry_backoff_seconds: base delay before a failed entry is re-appended,
            doubled per attempt. 0 re-appends immediately.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self._concurrency = concurrency
        self._max_retries = max_retries
        self._backoff = retry_backoff_seconds

        self._pending: Deque[QueueEntry] = deque()
        self._active = 0
        self._running = True
        self._executor: Optional[Executor] = None
        self._on_retry: Optional[FailureHook] = None
        self._on_exhausted: Optional[FailureHook] = None

        self._tasks: Set[asyncio.Task] = set()
        self._backoff_handles: Set[asyncio.TimerHandle] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, job_id: str, file_ids: List[int]) -> QueueEntry:
        entry = QueueEntry(job_id=job_id, file_ids=list(file_ids))
        self._pending.append(entry)
        Log.info(f"Added job {job_id} to queue. Queue size: {len(self._pending)}")
        self._dispatch()
        return entry

    def register_executor(
        self,
        executor: Executor,
        on_retry: Optional[FailureHook] = None,
        on_exhausted: Optional[FailureHook] = None,
    ) -> None:
        if self._executor is not None:
            raise RuntimeError("An executor is already registered")
        self._executor = executor
        self._on_retry = on_retry
        self._on_exhausted = on_exhausted
        Log.info("Executor registered, queue is now processing")
        self._dispatch()

    def pause(self) -> None:
        self._running = False
        Log.info("Queue paused")

    def resume(self) -> None:
        self._running = True
        Log.info("Queue resumed")
        self._dispatch()

    def stop(self) -> None:
        self.pause()
        dropped = self._discard_pending()
        Log.info(f"Queue stopped. Cleared {dropped} pending job(s)")

    async def shutdown(self, timeout: float = 30.0) -> bool:
        Log.info("Initiating graceful queue shutdown...")
        self.pause()
        drained = True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            drained = False
            Log.warning(f"Shutdown timeout reached with {self._active} active job(s)")
        self._discard_pending()
        Log.info("Queue shutdown complete")
        return drained

    def stats(self) -> QueueStats:
        return QueueStats(
            pending=len(self._pending) + len(self._backoff_handles),
            active=self._active,
            concurrency=self._concurrency,
            running=self._running,
        )

    def _dispatch(self) -> None:
        """Start entries until the ceiling is reached or nothing is pending."""
        if not self._running or self._executor is None:
            return
        while self._active < self._concurrency and self._pending:
            entry = self._pending.popleft()
            self._active += 1
            self._idle.clear()
            task = asyncio.create_task(self._run(entry))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, entry: QueueEntry) -> None:
        entry.attempts += 1
        Log.info(
            f"Processing job {entry.job_id} (attempt {entry.attempts}/{self._max_retries})"
        )
        try:
            await self._executor(entry)
            Log.info(f"Job {entry.job_id} completed successfully")
        except asyncio.CancelledError:
            raise
        except TerminalProcessingError as exc:
            Log.error(f"Job {entry.job_id} failed terminally: {exc}")
            self._call_hook(self._on_exhausted, entry, exc)
        except Exception as exc:
            if entry.attempts < self._max_retries:
                Log.warning(f"Job {entry.job_id} failed, retrying: {exc}")
                self._call_hook(self._on_retry, entry, exc)
                self._requeue(entry)
            else:
                Log.error(f"Job {entry.job_id} failed after {entry.attempts} attempts: {exc}")
                self._call_hook(self._on_exhausted, entry, exc)
        finally:
            self._active -= 1
            if self._active == 0:
                self._idle.set()
            self._dispatch()

    def _requeue(self, entry: QueueEntry) -> None:
        delay = self._backoff * (2 ** (entry.attempts - 1)) if self._backoff > 0 else 0.0
        if delay <= 0:
            self._pending.append(entry)
            return

        def _append() -> None:
            self._backoff_handles.discard(handle)
            self._pending.append(entry)
            self._dispatch()

        handle = asyncio.get_running_loop().call_later(delay, _append)
        self._backoff_handles.add(handle)

    def _discard_pending(self) -> int:
        dropped = len(self._pending) + len(self._backoff_handles)
        self._pending.clear()
        for handle in self._backoff_handles:
            handle.cancel()
        self._backoff_handles.clear()
        return dropped

    @staticmethod
    def _call_hook(hook: Optional[FailureHook], entry: QueueEntry, exc: BaseException) -> None:
        if hook is None:
            return
        try:
            hook(entry, exc)
        except Exception:
            Log.exception(f"Failure hook raised for job {entry.job_id}")
