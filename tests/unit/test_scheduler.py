import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from core.exceptions import InvalidTransitionError, NetworkError
from ingestion.scheduler import MigrationScheduler
from models.base import MigrationStatus


def make_controller(status: MigrationStatus) -> MagicMock:
    controller = MagicMock()
    controller.status = status
    controller.start = AsyncMock(return_value=23)
    return controller


def test_scheduler_initialization():
    scheduler = MigrationScheduler(make_controller(MigrationStatus.IDLE), interval_minutes=60)
    assert scheduler.scheduler is not None
    assert scheduler.enabled


def test_zero_interval_disables_scheduler():
    scheduler = MigrationScheduler(make_controller(MigrationStatus.IDLE), interval_minutes=0)
    with patch.object(scheduler.scheduler, "add_job") as add_job:
        scheduler.start()
    assert not scheduler.enabled
    add_job.assert_not_called()


@pytest.mark.asyncio
async def test_sync_job_starts_idle_controller():
    controller = make_controller(MigrationStatus.IDLE)
    await MigrationScheduler(controller, 60).run_sync_job()
    controller.start.assert_awaited_once()


@pytest.mark.asyncio
async def test_sync_job_restarts_completed_run():
    controller = make_controller(MigrationStatus.COMPLETED)
    await MigrationScheduler(controller, 60).run_sync_job()
    controller.start.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [MigrationStatus.RUNNING, MigrationStatus.PAUSED, MigrationStatus.FAILED])
async def test_sync_job_skips_active_or_failed_runs(status):
    controller = make_controller(status)
    await MigrationScheduler(controller, 60).run_sync_job()
    controller.start.assert_not_awaited()


@pytest.mark.asyncio
async def test_sync_job_logs_start_errors():
    controller = make_controller(MigrationStatus.IDLE)
    controller.start.side_effect = NetworkError("sheet provider down")

    await MigrationScheduler(controller, 60).run_sync_job()

    controller.start.side_effect = InvalidTransitionError("already running")
    await MigrationScheduler(controller, 60).run_sync_job()

    assert controller.start.await_count == 2


def test_start_registers_single_instance_job():
    scheduler = MigrationScheduler(make_controller(MigrationStatus.IDLE), interval_minutes=15)
    with patch.object(scheduler.scheduler, "add_job") as add_job, \
            patch.object(scheduler.scheduler, "start") as start:
        scheduler.start()

    start.assert_called_once()
    kwargs = add_job.call_args.kwargs
    assert kwargs["id"] == "migration_sync_job"
    assert kwargs["max_instances"] == 1
