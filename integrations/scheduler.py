"""
Cron scheduling for sync passes.

Ticks come from APScheduler's AsyncIOScheduler. Each tick launches the
callback as its own task so the scheduler never blocks; a tick that arrives
while the previous run is still in flight is skipped (never queued).
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import settings
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[], Union[Awaitable[Any], Any]]
ErrorCallback = Callable[[Exception], Union[Awaitable[Any], Any]]

DAY_NAMES = {
    "0": "Sunday",
    "1": "Monday",
    "2": "Tuesday",
    "3": "Wednesday",
    "4": "Thursday",
    "5": "Friday",
    "6": "Saturday",
    "7": "Sunday",
}


class Scheduler:
    """
    Run ``on_trigger`` on a cron schedule, at most once at a time.

    Attributes:
        schedule: Five-field cron expression
        skipped_runs: Ticks dropped because a run was still in flight
        completed_runs: Runs that finished (successfully or not)
    """

    def __init__(
        self,
        schedule: str,
        on_trigger: TriggerCallback,
        on_error: Optional[ErrorCallback] = None,
        timezone: Optional[str] = None,
        job_id: str = "sync"
    ):
        self.schedule = schedule
        self.on_trigger = on_trigger
        self.on_error = on_error
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.job_id = job_id

        try:
            self._trigger = cron_trigger(schedule, timezone=self.timezone)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid cron expression: {schedule!r}",
                context={"schedule": schedule},
                original_exception=e
            )

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._current: Optional[asyncio.Task] = None
        self.skipped_runs = 0
        self.completed_runs = 0

    def start(self) -> None:
        """Start ticking. Must be called from a running event loop."""
        if self.is_running():
            return
        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._scheduler.add_job(
            self._on_tick,
            trigger=self._trigger,
            id=self.job_id,
            replace_existing=True,
            coalesce=True
        )
        self._scheduler.start()
        logger.info(f"Scheduler started for {self.job_id} ({describe_cron_schedule(self.schedule)})")

    def stop(self) -> None:
        """Stop ticking. An in-flight run is left to finish."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info(f"Scheduler stopped for {self.job_id}")
        self._scheduler = None

    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def is_busy(self) -> bool:
        return self._current is not None and not self._current.done()

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is not None:
            job = self._scheduler.get_job(self.job_id)
            if job is not None:
                return job.next_run_time
            return None
        now = datetime.now(self._trigger.timezone)
        return self._trigger.get_next_fire_time(None, now)

    def trigger(self) -> bool:
        """
        Start a run now, subject to the same overlap control as ticks.

        Returns:
            True if a run was started, False if one was already in flight
        """
        return self._launch("manual")

    async def wait_idle(self) -> None:
        """Wait for the in-flight run (if any) to finish."""
        current = self._current
        if current is not None:
            await asyncio.gather(current, return_exceptions=True)

    async def _on_tick(self) -> None:
        self._launch("scheduled")

    def _launch(self, reason: str) -> bool:
        if self.is_busy:
            self.skipped_runs += 1
            logger.warning(f"Skipping {reason} run of {self.job_id}: previous run still in progress")
            return False
        self._current = asyncio.create_task(self._run())
        return True

    async def _run(self) -> None:
        try:
            outcome = self.on_trigger()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            await self._report(e)
        finally:
            self.completed_runs += 1

    async def _report(self, error: Exception) -> None:
        if self.on_error is None:
            logger.error(f"Scheduled run of {self.job_id} failed: {error}")
            return
        try:
            outcome = self.on_error(error)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as handler_error:
            logger.error(f"Error handler for {self.job_id} failed: {handler_error}")


def create_scheduler(
    schedule: str,
    on_trigger: TriggerCallback,
    on_error: Optional[ErrorCallback] = None,
    timezone: str = "UTC"
) -> Scheduler:
    """
    Build a Scheduler for a cron expression.

    Raises:
        ConfigurationError: Invalid cron expression
    """
    return Scheduler(schedule, on_trigger, on_error=on_error, timezone=timezone)


def describe_cron_schedule(expression: str) -> str:
    """
    Render a cron expression in plain English.

    >>> describe_cron_schedule("*/15 * * * *")
    'Every 15 minutes'
    >>> describe_cron_schedule("30 9 * * 1-5")
    'Weekdays at 9:30'
    """
    fields = expression.split()
    if len(fields) != 5:
        return "Invalid cron expression"

    minute, hour, day, month, weekday = fields

    if fields == ["*"] * 5:
        return "Every minute"

    if minute.startswith("*/") and hour == day == month == weekday == "*":
        step = minute[2:]
        if step.isdigit():
            return "Every minute" if int(step) == 1 else f"Every {int(step)} minutes"

    if minute == "0" and day == month == weekday == "*":
        if hour == "*":
            return "Every hour"
        if hour.startswith("*/") and hour[2:].isdigit():
            step = int(hour[2:])
            return "Every hour" if step == 1 else f"Every {step} hours"

    if minute.isdigit() and hour.isdigit() and int(minute) < 60 and int(hour) < 24 and month == "*":
        at = f"{int(hour)}:{int(minute):02d}"
        if day == "*" and weekday == "*":
            if at == "0:00":
                return "Daily at midnight"
            return f"Daily at {at}"
        if day == "*" and weekday == "1-5":
            return f"Weekdays at {at}"
        if day == "*" and weekday in DAY_NAMES:
            return f"Weekly on {DAY_NAMES[weekday]} at {at}"
        if day.isdigit() and 1 <= int(day) <= 31 and weekday == "*":
            return f"Monthly on day {int(day)} at {at}"

    try:
        cron_trigger(expression)
    except ValueError:
        return "Invalid cron expression"
    return f"At {expression}"


def cron_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Build a CronTrigger from a standard crontab expression.

    APScheduler numbers weekdays from Monday, crontab from Sunday; numeric
    day-of-week values are rewritten as day names before parsing.

    Raises:
        ValueError: Malformed expression
    """
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Wrong number of fields; got {len(fields)}, expected 5")
    fields[4] = _weekday_names(fields[4])
    return CronTrigger.from_crontab(" ".join(fields), timezone=timezone)


_CRONTAB_DAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _weekday_names(field: str) -> str:
    if field in ("*", "?"):
        return field

    names = []
    for token in field.split(","):
        base, _, step = token.partition("/")
        stride = int(step) if step.isdigit() else 1
        low, dash, high = base.partition("-")

        if dash and low.isdigit() and high.isdigit():
            days = range(int(low), int(high) + 1, stride)
        elif not dash and base.isdigit():
            days = range(int(base), int(base) + 1) if not step else range(int(base), 7, stride)
        else:
            names.append(token)
            continue

        for day in days:
            if day > 7:
                raise ValueError(f"Invalid day of week: {day}")
            if _CRONTAB_DAYS[day] not in names:
                names.append(_CRONTAB_DAYS[day])

    if not names:
        raise ValueError(f"Invalid day-of-week field: {field!r}")
    return ",".join(names)
