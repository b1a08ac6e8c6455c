import pytest
from pydantic import ValidationError

from app.config import Settings


class TestSettingsDefaults:
    def test_queue_defaults(self) -> None:
        s = Settings()
        assert s.queue_concurrency == 5
        assert s.queue_max_retries == 3
        assert s.queue_retry_backoff_seconds == 0.0

    def test_submission_limits(self) -> None:
        s = Settings()
        assert s.min_file_id == 10_000
        assert s.max_file_id == 100_000_000
        assert s.max_files_per_job == 1000
        assert s.max_batch_jobs == 10

    def test_stream_defaults(self) -> None:
        s = Settings()
        assert s.sse_heartbeat_seconds == 15.0
        assert s.poll_cache_seconds == 2
        assert s.terminal_cache_seconds == 3600

    def test_worker_batch_size(self) -> None:
        assert Settings().worker_batch_size == 3


class TestSettingsFromEnv:
    def test_loads_concurrency(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QUEUE_CONCURRENCY", "8")
        assert Settings().queue_concurrency == 8

    def test_loads_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QUEUE_RETRY_BACKOFF_SECONDS", "0.5")
        assert Settings().queue_retry_backoff_seconds == 0.5

    def test_loads_log_level(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        assert Settings().log_level == "DEBUG"


class TestSettingsValidation:
    def test_invalid_concurrency_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QUEUE_CONCURRENCY", "many")
        with pytest.raises(ValidationError):
            Settings()
