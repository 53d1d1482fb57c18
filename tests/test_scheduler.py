"""Tests for the background job scheduler."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from loopcore.config import settings
from loopcore.services import scheduler as scheduler_module
from loopcore.services.scheduler import (
    get_scheduler,
    run_heartbeat,
    start_scheduler,
    stop_scheduler,
)


@pytest.fixture
def service():
    service = MagicMock()
    service.heartbeat = AsyncMock(return_value=True)
    service.autosense = AsyncMock()
    service.autotune = AsyncMock()
    return service


class TestScheduler:
    """Tests for scheduler start/stop."""

    @pytest.mark.asyncio
    async def test_registers_enabled_jobs(self, service, monkeypatch):
        monkeypatch.setattr(settings, "heartbeat_enabled", True)
        monkeypatch.setattr(settings, "autosens_enabled", True)
        monkeypatch.setattr(settings, "autotune_enabled", True)

        scheduler = start_scheduler(service)
        try:
            assert get_scheduler() is scheduler
            assert {job.id for job in scheduler.get_jobs()} == {
                "heartbeat",
                "autosens",
                "autotune",
            }
        finally:
            stop_scheduler()

        assert get_scheduler() is None

    @pytest.mark.asyncio
    async def test_disabled_jobs_not_registered(self, service, monkeypatch):
        monkeypatch.setattr(settings, "heartbeat_enabled", True)
        monkeypatch.setattr(settings, "autosens_enabled", False)
        monkeypatch.setattr(settings, "autotune_enabled", False)

        scheduler = start_scheduler(service)
        try:
            assert [job.id for job in scheduler.get_jobs()] == ["heartbeat"]
        finally:
            stop_scheduler()

    @pytest.mark.asyncio
    async def test_start_twice_returns_running_scheduler(self, service):
        first = start_scheduler(service)
        try:
            assert start_scheduler(service) is first
        finally:
            stop_scheduler()

    def test_stop_without_start(self):
        assert scheduler_module.scheduler is None

        stop_scheduler()


class TestJobs:
    """Tests for the job functions."""

    @pytest.mark.asyncio
    async def test_heartbeat_job(self, service):
        await run_heartbeat(service)

        service.heartbeat.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_heartbeat_job_swallows_errors(self, service):
        service.heartbeat.side_effect = RuntimeError("queue closed")

        await run_heartbeat(service)

    @pytest.mark.asyncio
    async def test_auxiliary_jobs(self, service):
        await scheduler_module.run_autosens(service)
        await scheduler_module.run_autotune(service)

        service.autosense.assert_awaited_once()
        service.autotune.assert_awaited_once()
