"""Periodic jobs driving cost refresh and report generation.

Each job is one long-lived asyncio task. Every iteration recomputes its next
fire time from clock.now() instead of sleeping a fixed interval, so a late
wake-up never accumulates into permanent drift. A failing job is logged and
left for its next natural tick. Months whose monthly run failed are retried
after every hourly refresh until they succeed.
"""
from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from ibp_billing.core.interfaces import Clock
from ibp_billing.core.services import BillingService
from ibp_billing.core.sla import add_months, month_start, previous_month
from ibp_billing.observability import get_logger
from ibp_billing.settings import Settings

logger = get_logger(__name__)


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    async def sleep_until(self, when: datetime) -> None:
        delay = (when - self.now()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Boundary arithmetic
# ---------------------------------------------------------------------------


def next_hour_boundary(now: datetime) -> datetime:
    """Top of the next hour strictly after now."""
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_daily_run(now: datetime, hour: int = 0, minute: int = 5) -> datetime:
    """Next occurrence of hour:minute UTC strictly after now."""
    candidate = datetime.combine(now.date(), time(hour, minute), tzinfo=timezone.utc)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def monthly_fire_time(month: date, day: int = 1, hour: int = 0, minute: int = 5) -> datetime:
    """Scheduled monthly generation time within the given month."""
    first = month_start(month)
    return datetime(first.year, first.month, day, hour, minute, tzinfo=timezone.utc)


def next_monthly_run(now: datetime, day: int = 1, hour: int = 0, minute: int = 5) -> datetime:
    """Next monthly fire time strictly after now."""
    candidate = monthly_fire_time(month_start(now), day, hour, minute)
    if candidate <= now:
        candidate = monthly_fire_time(add_months(month_start(now), 1), day, hour, minute)
    return candidate


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class BillingScheduler:
    """Runs the hourly refresh, daily report, monthly report and startup catch-up.

    Args:
        service: The billing service the jobs act on.
        clock: Time source; a virtual clock in tests.
        settings: Fire times and catch-up delay.
    """

    def __init__(self, service: BillingService, clock: Clock, settings: Settings) -> None:
        self._service = service
        self._clock = clock
        self._settings = settings
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Spawn one task per job. Must be called from a running event loop."""
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self.hourly_refresh_loop(), name="billing-hourly-refresh"),
            asyncio.create_task(self.daily_report_loop(), name="billing-daily-report"),
            asyncio.create_task(self.monthly_report_loop(), name="billing-monthly-report"),
            asyncio.create_task(self.startup_catchup(), name="billing-startup-catchup"),
        ]
        logger.info("billing_scheduler_started", jobs=len(self._tasks))

    async def stop(self) -> None:
        """Cancel all jobs and wait for them to unwind."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("billing_scheduler_stopped")

    async def hourly_refresh_loop(self) -> None:
        while True:
            await self._clock.sleep_until(next_hour_boundary(self._clock.now()))
            await self._run_job("hourly_refresh", lambda: asyncio.to_thread(self._service.refresh))
            await self._run_job("monthly_report_retry", self._service.retry_pending_months)

    async def daily_report_loop(self) -> None:
        while True:
            fire_at = next_daily_run(
                self._clock.now(),
                self._settings.daily_report_hour,
                self._settings.daily_report_minute,
            )
            await self._clock.sleep_until(fire_at)
            await self._run_job("daily_report", self._service.generate_daily_report)

    async def monthly_report_loop(self) -> None:
        while True:
            fire_at = next_monthly_run(
                self._clock.now(),
                self._settings.monthly_report_day,
                self._settings.monthly_report_hour,
                self._settings.monthly_report_minute,
            )
            logger.info("monthly_generation_scheduled", fire_at=fire_at.isoformat())
            await self._clock.sleep_until(fire_at)
            # Earlier failed months first, then the month that just ended.
            await self._run_job("monthly_report_retry", self._service.retry_pending_months)
            await self._run_job("monthly_report", self._service.generate_monthly_reports)

    async def startup_catchup(self) -> None:
        """Retry failed months, generate last month if its run was missed, then the daily report."""
        delay = timedelta(seconds=self._settings.startup_catchup_delay_seconds)
        await self._clock.sleep_until(self._clock.now() + delay)
        await self._run_job("monthly_report_retry", self._service.retry_pending_months)

        now = self._clock.now()
        target = previous_month(now)
        scheduled = monthly_fire_time(
            now,
            self._settings.monthly_report_day,
            self._settings.monthly_report_hour,
            self._settings.monthly_report_minute,
        )
        if now >= scheduled and not self._service.guard.is_generated(target):
            logger.info("monthly_generation_catchup", month=target.strftime("%Y-%m"))
            await self._run_job(
                "monthly_report_catchup",
                lambda: self._service.generate_monthly_reports(target),
            )

        await self._run_job("daily_report_catchup", self._service.generate_daily_report)

    async def _run_job(self, name: str, job: Callable[[], Any | Awaitable[Any]]) -> None:
        try:
            result = job()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error("billing_job_failed", job=name, error=str(exc), exc_info=True)
