"""
Unit tests for the cron scheduler
"""

import asyncio
from datetime import date, datetime, timezone

import pytest

from core.exceptions import ConfigurationError
from integrations.scheduler import Scheduler, create_scheduler, cron_trigger, describe_cron_schedule


class TestDescribeCronSchedule:
    """Test human readable schedules"""

    @pytest.mark.parametrize("expression,expected", [
        ("* * * * *", "Every minute"),
        ("*/1 * * * *", "Every minute"),
        ("*/15 * * * *", "Every 15 minutes"),
        ("0 * * * *", "Every hour"),
        ("0 */6 * * *", "Every 6 hours"),
        ("0 0 * * *", "Daily at midnight"),
        ("30 9 * * *", "Daily at 9:30"),
        ("30 9 * * 1-5", "Weekdays at 9:30"),
        ("0 8 * * 0", "Weekly on Sunday at 8:00"),
        ("0 8 * * 7", "Weekly on Sunday at 8:00"),
        ("15 14 * * 3", "Weekly on Wednesday at 14:15"),
        ("0 2 1 * *", "Monthly on day 1 at 2:00"),
        ("5 4 * 1 *", "At 5 4 * 1 *"),
        ("not a cron", "Invalid cron expression"),
        ("99 * * * * *", "Invalid cron expression"),
        ("0 25 * * *", "Invalid cron expression"),
    ])
    def test_describe(self, expression, expected):
        assert describe_cron_schedule(expression) == expected


class TestCronTrigger:
    """Test crontab weekday numbering"""

    def test_sunday_is_zero(self):
        trigger = cron_trigger("0 9 * * 0", timezone="UTC")
        monday = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

        fire = trigger.get_next_fire_time(None, monday)

        assert fire.date() == date(2024, 1, 21)
        assert fire.hour == 9

    def test_weekday_range(self):
        trigger = cron_trigger("0 9 * * 1-5", timezone="UTC")
        saturday = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)

        assert trigger.get_next_fire_time(None, saturday).date() == date(2024, 1, 22)

    def test_rejects_bad_expressions(self):
        with pytest.raises(ValueError):
            cron_trigger("* * *")
        with pytest.raises(ValueError):
            cron_trigger("0 9 * * 8")


class TestScheduler:
    """Test overlap control and error routing"""

    def test_invalid_expression(self):
        with pytest.raises(ConfigurationError):
            create_scheduler("every day please", lambda: None)

    def test_next_run_time_before_start(self):
        scheduler = create_scheduler("*/5 * * * *", lambda: None)
        next_run = scheduler.next_run_time()

        assert next_run is not None
        assert next_run.minute % 5 == 0

    @pytest.mark.asyncio
    async def test_overlapping_runs_are_skipped(self):
        gate = asyncio.Event()
        runs = []

        async def on_trigger():
            runs.append(1)
            await gate.wait()

        scheduler = Scheduler("* * * * *", on_trigger, timezone="UTC")

        assert scheduler.trigger() is True
        await asyncio.sleep(0)
        assert scheduler.is_busy is True
        assert scheduler.trigger() is False
        assert scheduler.skipped_runs == 1

        gate.set()
        await scheduler.wait_idle()

        assert runs == [1]
        assert scheduler.completed_runs == 1
        assert scheduler.trigger() is True
        await scheduler.wait_idle()
        assert scheduler.completed_runs == 2

    @pytest.mark.asyncio
    async def test_errors_go_to_on_error(self):
        errors = []

        async def on_trigger():
            raise RuntimeError("sync blew up")

        scheduler = Scheduler("* * * * *", on_trigger, on_error=errors.append, timezone="UTC")
        scheduler.trigger()
        await scheduler.wait_idle()

        assert [str(e) for e in errors] == ["sync blew up"]
        assert scheduler.is_busy is False

    @pytest.mark.asyncio
    async def test_errors_without_handler_are_logged(self, caplog):
        def on_trigger():
            raise RuntimeError("boom")

        scheduler = Scheduler("* * * * *", on_trigger, timezone="UTC")
        scheduler.trigger()
        await scheduler.wait_idle()

        assert "boom" in caplog.text
        assert scheduler.completed_runs == 1

    @pytest.mark.asyncio
    async def test_scheduled_tick_launches_run(self):
        calls = []
        scheduler = Scheduler("* * * * *", lambda: calls.append(1), timezone="UTC")

        await scheduler._on_tick()
        await scheduler.wait_idle()

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = create_scheduler("0 3 * * *", lambda: None)

        scheduler.start()
        try:
            assert scheduler.is_running() is True
            next_run = scheduler.next_run_time()
            assert (next_run.hour, next_run.minute) == (3, 0)
        finally:
            scheduler.stop()

        assert scheduler.is_running() is False
