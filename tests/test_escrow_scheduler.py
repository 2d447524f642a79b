"""Tests for the background job wiring"""

from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.escrow_scheduler import (
    EXPIRY_SWEEP_JOB_ID,
    NOTIFICATION_QUEUE_JOB_ID,
    EscrowScheduler,
    run_expiry_sweep,
    run_notification_queue,
)


@pytest.mark.asyncio
async def test_run_expiry_sweep_returns_cancelled_count():
    sweeper = MagicMock()
    sweeper.sweep.return_value = 3

    assert await run_expiry_sweep(sweeper) == 3
    sweeper.sweep.assert_called_once_with()


@pytest.mark.asyncio
async def test_run_expiry_sweep_swallows_failures():
    sweeper = MagicMock()
    sweeper.sweep.side_effect = RuntimeError("database unavailable")

    assert await run_expiry_sweep(sweeper) == 0


@pytest.mark.asyncio
async def test_run_notification_queue():
    sink = MagicMock()
    sink.process_queue.return_value = 2

    assert await run_notification_queue(sink) == 2


@pytest.mark.asyncio
async def test_scheduler_registers_hourly_sweep_and_queue_jobs(monkeypatch):
    monkeypatch.setattr(Config, "EXPIRY_SWEEP_ENABLED", True)
    scheduler = EscrowScheduler(MagicMock(), notification_sink=MagicMock())

    scheduler.start()
    try:
        sweep_job = scheduler.scheduler.get_job(EXPIRY_SWEEP_JOB_ID)
        queue_job = scheduler.scheduler.get_job(NOTIFICATION_QUEUE_JOB_ID)

        assert isinstance(sweep_job.trigger, CronTrigger)
        assert str(sweep_job.trigger.fields[CronTrigger.FIELD_NAMES.index("minute")]) == "0"
        assert isinstance(queue_job.trigger, IntervalTrigger)
        assert queue_job.trigger.interval.total_seconds() == Config.NOTIFICATION_QUEUE_INTERVAL_SECONDS
    finally:
        scheduler.stop()

    assert scheduler.scheduler.running is False


@pytest.mark.asyncio
async def test_sweep_job_can_be_disabled(monkeypatch):
    monkeypatch.setattr(Config, "EXPIRY_SWEEP_ENABLED", False)
    scheduler = EscrowScheduler(MagicMock())

    scheduler.start()
    try:
        assert scheduler.scheduler.get_jobs() == []
    finally:
        scheduler.stop()
