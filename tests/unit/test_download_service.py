import uuid

import pytest

from app.config import Settings
from app.jobs.exceptions import InvalidInputError
from app.jobs.models import JobStatus
from app.jobs.service import DownloadService

pytestmark = pytest.mark.asyncio


@pytest.fixture
async def make_service(test_settings: Settings):
    """Build started services and shut them down after the test."""
    services = []

    async def _make(storage, **overrides) -> DownloadService:
        settings = test_settings.model_copy(update=overrides)
        service = DownloadService(settings, storage)
        await service.start()
        services.append(service)
        return service

    yield _make
    for service in services:
        await service.shutdown(timeout=1.0)


def _terminal(service: DownloadService, job_id: str):
    return lambda: service.store.get(job_id).is_terminal


class TestSubmission:
    async def test_job_is_queued_immediately_after_submit(
        self, make_service, make_storage
    ) -> None:
        service = await make_service(make_storage())
        job = service.submit([10001, 10002, 10003])

        current = service.store.get(job.id)
        assert current.status == JobStatus.QUEUED
        assert current.progress == 0
        assert current.total_files == 3

    async def test_empty_submission_creates_nothing(self, make_service, make_storage) -> None:
        service = await make_service(make_storage())
        before = service.stats()

        with pytest.raises(InvalidInputError):
            service.submit([])

        assert service.stats() == before
        assert service.stats()["jobs"]["total"] == 0

    @pytest.mark.parametrize(
        "file_ids",
        [[9999], [100_000_001], [10001, "10002"], [True], list(range(10001, 11002))],
    )
    async def test_invalid_submissions_rejected(
        self, make_service, make_storage, file_ids
    ) -> None:
        service = await make_service(make_storage())
        with pytest.raises(InvalidInputError):
            service.submit(file_ids)
        assert len(service.store) == 0
        assert service.queue.stats().pending == 0

    async def test_enqueue_failure_rolls_back_job(
        self, make_service, make_storage, monkeypatch
    ) -> None:
        service = await make_service(make_storage())

        def broken_enqueue(job_id, file_ids):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(service.queue, "enqueue", broken_enqueue)

        with pytest.raises(RuntimeError):
            service.submit([10001])
        assert len(service.store) == 0

    async def test_unknown_job_is_not_found(self, make_service, make_storage) -> None:
        service = await make_service(make_storage())
        service.submit([10001])
        assert service.store.get(str(uuid.uuid4())) is None

    async def test_batch_is_validated_before_creating_jobs(
        self, make_service, make_storage
    ) -> None:
        service = await make_service(make_storage())
        with pytest.raises(InvalidInputError):
            service.submit_batch([[10001], []])
        assert len(service.store) == 0

    async def test_batch_size_limit(self, make_service, make_storage) -> None:
        service = await make_service(make_storage(), max_batch_jobs=2)
        with pytest.raises(InvalidInputError):
            service.submit_batch([[10001], [10002], [10003]])
        with pytest.raises(InvalidInputError):
            service.submit_batch([])

        jobs = service.submit_batch([[10001], [10002, 10003]])
        assert [j.total_files for j in jobs] == [1, 2]


class TestProcessing:
    async def test_successful_job_becomes_ready(
        self, make_service, make_storage, until
    ) -> None:
        service = await make_service(make_storage())
        job = service.submit([10001, 10002, 10003])

        await until(_terminal(service, job.id))

        final = service.store.get(job.id)
        assert final.status == JobStatus.READY
        assert final.progress == 100
        assert final.download_url is not None
        assert final.error is None

    async def test_transient_failures_are_retried(
        self, make_service, make_storage, until
    ) -> None:
        storage = make_storage(fail_first=2)
        service = await make_service(storage, queue_max_retries=3)
        job = service.submit([10001])

        await until(_terminal(service, job.id))

        assert service.store.get(job.id).status == JobStatus.READY
        assert storage.calls == [10001, 10001, 10001]

    async def test_exhausted_retries_fail_job_with_frozen_progress(
        self, make_service, make_storage, until
    ) -> None:
        storage = make_storage(fail_ids={10004})
        service = await make_service(storage, queue_max_retries=3, worker_batch_size=3)
        job = service.submit([10001, 10002, 10003, 10004])

        await until(_terminal(service, job.id))

        final = service.store.get(job.id)
        assert final.status == JobStatus.FAILED
        assert final.error
        assert final.download_url is None
        assert final.progress == 75
        assert storage.calls.count(10004) == 3

    async def test_progress_never_observed_decreasing(
        self, make_service, make_storage, until
    ) -> None:
        storage = make_storage(fail_first=1, delay=0.001)
        service = await make_service(storage, worker_batch_size=1)
        job = service.submit([10001, 10002, 10003, 10004])
        _, subscription = service.store.subscribe(job.id)

        await until(_terminal(service, job.id))

        observed = []
        while (event := await subscription.get()) is not None:
            observed.append(event.job.progress)
        assert observed == sorted(observed)
        assert observed[-1] == 100

    async def test_concurrency_ceiling_across_jobs(
        self, make_service, make_storage, until
    ) -> None:
        storage = make_storage(delay=0.01)
        service = await make_service(storage, queue_concurrency=2, worker_batch_size=1)
        jobs = [service.submit([10001 + i]) for i in range(6)]
        assert service.queue.stats().active == 2
        assert service.queue.stats().pending == 4

        await until(lambda: all(service.store.get(j.id).is_terminal for j in jobs))

        assert storage.max_active <= 2

    async def test_stats_shape(self, make_service, make_storage) -> None:
        service = await make_service(make_storage())
        service.submit([10001])
        stats = service.stats()

        assert stats["queue"]["concurrency"] == 2
        assert stats["queue"]["active"] + stats["queue"]["pending"] == 1
        assert stats["jobs"]["total"] == 1


class TestLifecycle:
    async def test_start_is_idempotent(self, make_service, make_storage) -> None:
        service = await make_service(make_storage())
        await service.start()

    async def test_shutdown_drains_active_jobs(self, test_settings, make_storage) -> None:
        service = DownloadService(test_settings, make_storage(delay=0.01))
        await service.start()
        job = service.submit([10001])

        assert await service.shutdown(timeout=1.0) is True
        assert service.store.get(job.id).status == JobStatus.READY

    async def test_cleanup_uses_retention(self, make_service, make_storage, until) -> None:
        service = await make_service(make_storage(), job_retention_hours=0)
        job = service.submit([10001])
        await until(_terminal(service, job.id))
        await until(lambda: service.cleanup() == 1)

        assert service.store.get(job.id) is None
