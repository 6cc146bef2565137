"""Unit tests for worker entrypoint routing and logging"""

import asyncio
import json
import logging
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

from hm_workers.__main__ import GracefulShutdown, run_worker_task
from hm_workers.logging_config import JsonFormatter, setup_logging


class TestJobRouting:
    async def test_unknown_job_type_raises(self):
        with pytest.raises(ValueError, match="Unknown job type"):
            await run_worker_task("invalid_job", GracefulShutdown())

    async def test_repo_sync_routes_to_job(self):
        shutdown = GracefulShutdown()

        with patch(
            "hm_workers.jobs.repo_sync_job.run_repo_sync_job", new_callable=AsyncMock
        ) as job:
            job.return_value = {"synced": 1}
            result = await run_worker_task("repo_sync", shutdown)

        assert result == {"synced": 1}
        job.assert_awaited_once_with(shutdown.shutdown_event)

    async def test_stale_sweep_routes_to_job(self):
        with patch(
            "hm_workers.jobs.stale_sweep_job.run_stale_sweep_job", new_callable=AsyncMock
        ) as job:
            job.return_value = {"candidates": 0}
            result = await run_worker_task("stale_sweep", GracefulShutdown())

        assert result == {"candidates": 0}


class TestGracefulShutdown:
    async def test_signal_sets_event(self):
        shutdown = GracefulShutdown()
        assert not shutdown.requested

        shutdown.signal_handler(15)

        assert shutdown.requested
        assert isinstance(shutdown.shutdown_event, asyncio.Event)


class TestLoggingSetup:
    def test_setup_logging_returns_short_job_id(self):
        """Falls back to the first 8 chars of a UUID"""
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("JOB_EXECUTION_ID", None)
            job_id = setup_logging()

        assert len(job_id) == 8

    def test_uses_job_execution_id_if_available(self):
        with patch.dict(os.environ, {"JOB_EXECUTION_ID": "sweep-run-123"}, clear=False):
            job_id = setup_logging()

        assert job_id == "sweep-run-123"


class TestJsonFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord("hm_workers.test", logging.INFO, __file__, 1, "synced %d", (3,), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_includes_job_id_and_message(self):
        entry = json.loads(JsonFormatter(job_id="abc12345").format(self._record()))

        assert entry["job_id"] == "abc12345"
        assert entry["message"] == "synced 3"
        assert entry["severity"] == "INFO"
        assert entry["logger"] == "hm_workers.test"

    def test_includes_extra_fields(self):
        entry = json.loads(JsonFormatter().format(self._record(repository="octo/hello", failed=0)))

        assert entry["repository"] == "octo/hello"
        assert entry["failed"] == 0
        assert "args" not in entry
        assert "levelno" not in entry

    def test_includes_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]
