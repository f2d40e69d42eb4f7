"""Billing service: the single object owning the store and generation state.

All collaborators are injected via the constructor; nothing here touches
module-level state, FastAPI or SQLAlchemy.

Key invariants:
- refresh() publishes a complete new Summary or nothing at all.
- Monthly artifacts are built in a staging directory and promoted only when
  every artifact was written; a failed run leaves no partial month behind,
  does not record success and marks the month pending, so it is regenerated
  from scratch by retry_pending_months() even after later months succeed.
- Daily artifacts are stateless and simply overwritten.
- Filesystem work runs in worker threads, never on the event loop.
"""
from __future__ import annotations

import asyncio
import re
import shutil
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from ibp_billing.core.cost import compute_summary, log_cost_breakdown
from ibp_billing.core.downtime import merge_downtime
from ibp_billing.core.generation import GenerationGuard
from ibp_billing.core.interfaces import (
    Clock,
    IConfigProvider,
    IEventLog,
    IGenerationStateStore,
    IReportRenderer,
)
from ibp_billing.core.models import (
    DowntimeEvent,
    MemberDowntime,
    MemberStatement,
    ReportArtifact,
    SLASummary,
    Summary,
)
from ibp_billing.core.sla import (
    SLACalculator,
    build_statements,
    log_sla_violations,
    month_bounds,
    month_start,
    previous_month,
)
from ibp_billing.core.store import SummaryStore
from ibp_billing.errors import EventLogUnavailableError, ReportGenerationError
from ibp_billing.observability import get_logger
from ibp_billing.settings import Settings

logger = get_logger(__name__)

_MONTH_DIR = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def _month_label(month: date) -> str:
    return month.strftime("%Y-%m")


def _reset_staging(staging_dir: Path) -> None:
    shutil.rmtree(staging_dir, ignore_errors=True)
    staging_dir.mkdir(parents=True)


def _promote(staging_dir: Path, final_dir: Path, retired_dir: Path) -> None:
    """Swap the finished staging directory into place of any earlier month directory."""
    shutil.rmtree(retired_dir, ignore_errors=True)
    if final_dir.exists():
        final_dir.rename(retired_dir)
    staging_dir.rename(final_dir)
    shutil.rmtree(retired_dir, ignore_errors=True)


def _scan_reports(reports_dir: Path, label: str | None) -> list[ReportArtifact]:
    if not reports_dir.is_dir():
        return []
    artifacts: list[ReportArtifact] = []
    for month_dir in sorted(reports_dir.iterdir(), reverse=True):
        if not month_dir.is_dir() or not _MONTH_DIR.match(month_dir.name):
            continue
        if label is not None and month_dir.name != label:
            continue
        for path in sorted(month_dir.iterdir()):
            if not path.is_file():
                continue
            stat = path.stat()
            artifacts.append(
                ReportArtifact(
                    month=month_dir.name,
                    name=path.name,
                    size=stat.st_size,
                    modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
    return artifacts


class BillingService:
    """Cost refresh, SLA evaluation and report generation.

    Args:
        config_provider: Source of members, services and regional pricing.
        event_log: Downtime event query surface.
        renderer: Artifact writer for daily and monthly reports.
        settings: Service configuration.
        clock: Time source (virtual in tests).
        state_store: Optional durable record of generated and failed months.
    """

    def __init__(
        self,
        config_provider: IConfigProvider,
        event_log: IEventLog,
        renderer: IReportRenderer,
        settings: Settings,
        clock: Clock,
        state_store: IGenerationStateStore | None = None,
    ) -> None:
        self._config_provider = config_provider
        self._event_log = event_log
        self._renderer = renderer
        self._settings = settings
        self._clock = clock
        self._store = SummaryStore()
        self._guard = GenerationGuard(state_store)
        self._sla = SLACalculator(config_provider, event_log, threshold=settings.sla_threshold)

    @property
    def store(self) -> SummaryStore:
        return self._store

    @property
    def guard(self) -> GenerationGuard:
        return self._guard

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def startup_check(self) -> None:
        """Verify configuration and event log are reachable.

        Raises:
            ConfigurationError: If the configuration cannot be loaded.
            EventLogUnavailableError: If the event log cannot be reached.
        """
        config = await asyncio.to_thread(self._config_provider.get_config)
        try:
            await self._event_log.ping()
        except Exception as exc:
            logger.error("billing_event_log_unreachable", error=str(exc))
            raise EventLogUnavailableError("event log unreachable at startup") from exc

        logger.info(
            "billing_startup_check_passed",
            members=len(config.members),
            services=len(config.services),
            regions=len(config.pricing),
        )

    # ------------------------------------------------------------------
    # Cost refresh
    # ------------------------------------------------------------------

    def refresh(self, verbose: bool = False) -> Summary:
        """Recompute costs from the current configuration and publish them.

        Blocking (reads the configuration file); async callers run it in a
        worker thread.

        Args:
            verbose: Also log the full per-member and per-service breakdown.

        Returns:
            The newly published Summary.
        """
        started = self._clock.now()
        config = self._config_provider.get_config()
        summary = compute_summary(config, generated_at=started)
        version = self._store.publish(summary)

        logger.info(
            "billing_refresh_completed",
            members=len(summary.members),
            services=len(summary.services),
            total=str(summary.total()),
            version=version,
        )
        if verbose:
            log_cost_breakdown(summary)
        return summary

    def get_summary(self) -> Summary:
        """Independent copy of the current snapshot."""
        return self._store.read()

    # ------------------------------------------------------------------
    # SLA
    # ------------------------------------------------------------------

    async def calculate_sla(self, month: date, summary: Summary | None = None) -> SLASummary:
        """SLA table for the given month, computed on demand.

        Raises:
            EventLogUnavailableError: If downtime cannot be determined.
        """
        snapshot = summary if summary is not None else self._store.read()
        return await self._sla.calculate(month_start(month), snapshot, now=self._clock.now())

    async def billing_statements(
        self,
        month: date,
        member_id: str | None = None,
    ) -> list[MemberStatement]:
        """SLA-adjusted statements for a month, optionally for one member."""
        snapshot = self._store.read()
        if member_id is not None:
            snapshot = Summary(
                members={k: v for k, v in snapshot.members.items() if k == member_id},
                services=snapshot.services,
                generated_at=snapshot.generated_at,
            )
        sla = await self.calculate_sla(month, snapshot)
        return build_statements(snapshot, sla, self._config_provider.get_config())

    # ------------------------------------------------------------------
    # Downtime
    # ------------------------------------------------------------------

    def _member_ids(self, member_id: str | None) -> list[str]:
        members = sorted(self._config_provider.get_config().members)
        if member_id is None:
            return members
        return [m for m in members if m == member_id]

    async def downtime_events(
        self,
        month: date,
        member_id: str | None = None,
    ) -> list[tuple[str, DowntimeEvent]]:
        """Down events overlapping a month, newest first, tagged with their member ID.

        Raises:
            EventLogUnavailableError: If the event log cannot be read.
        """
        config = self._config_provider.get_config()
        period_start, period_end = month_bounds(month)
        tagged: list[tuple[str, DowntimeEvent]] = []
        for member in self._member_ids(member_id):
            events = await self._sla.member_events(config, member, period_start, period_end)
            tagged.extend((member, event) for event in events)
        tagged.sort(key=lambda item: (item[1].start, item[0]), reverse=True)
        return tagged

    async def current_outages(self) -> list[tuple[str, DowntimeEvent]]:
        """Events still open right now, newest first.

        Raises:
            EventLogUnavailableError: If the event log cannot be read.
        """
        config = self._config_provider.get_config()
        now = self._clock.now()
        ongoing: list[tuple[str, DowntimeEvent]] = []
        for member in self._member_ids(None):
            events = await self._sla.member_events(config, member, now, now + timedelta(microseconds=1))
            ongoing.extend((member, event) for event in events if event.is_open)
        ongoing.sort(key=lambda item: (item[1].start, item[0]), reverse=True)
        return ongoing

    async def downtime_summary(self, month: date, member_id: str | None = None) -> list[MemberDowntime]:
        """Per-member event counts and merged downtime hours for a month.

        Raises:
            EventLogUnavailableError: If the event log cannot be read.
        """
        config = self._config_provider.get_config()
        period_start, period_end = month_bounds(month)
        now = self._clock.now()
        totals: list[MemberDowntime] = []
        for member in self._member_ids(member_id):
            events = await self._sla.member_events(config, member, period_start, period_end)
            merged = merge_downtime(events, period_start, period_end, now=now)
            totals.append(
                MemberDowntime(
                    member_id=member,
                    events=len(events),
                    ongoing=sum(1 for event in events if event.is_open),
                    hours_down=merged.total_down_hours,
                )
            )
        return totals

    # ------------------------------------------------------------------
    # Generated artifacts
    # ------------------------------------------------------------------

    async def list_reports(self, month: date | None = None) -> list[ReportArtifact]:
        """Files of finalized monthly report directories, newest month first."""
        label = _month_label(month) if month is not None else None
        return await asyncio.to_thread(_scan_reports, self._settings.reports_dir, label)

    async def report_path(self, label: str, name: str) -> Path | None:
        """Location of one finalized monthly artifact, or None if there is no such file."""
        if not _MONTH_DIR.match(label) or not name or name != Path(name).name or name.startswith("."):
            return None
        path = self._settings.reports_dir / label / name
        if not await asyncio.to_thread(path.is_file):
            return None
        return path

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def generate_daily_report(self) -> Path:
        """Write today's service-cost artifact, overwriting any earlier one."""
        snapshot = self._store.read()
        day = self._clock.now().date()
        out_dir = self._settings.reports_dir
        await asyncio.to_thread(out_dir.mkdir, parents=True, exist_ok=True)

        path = await asyncio.to_thread(self._renderer.write_daily_report, snapshot, out_dir, day)
        logger.info("daily_report_written", day=day.isoformat(), path=str(path))
        return path

    async def generate_monthly_reports(self, month: date | None = None) -> bool:
        """Produce the finalized artifact set for a billing month.

        Args:
            month: Billing month; defaults to the month before now.

        Returns:
            True if this call generated the month, False if it was a no-op
            because the month is already done or a run is in flight.

        Raises:
            ReportGenerationError: If any artifact failed to write.
            EventLogUnavailableError: If SLA data could not be determined.
        """
        target = month_start(month) if month is not None else previous_month(self._clock.now())
        if not self._guard.try_begin(target):
            return False

        success = False
        try:
            logger.info("monthly_generation_started", month=_month_label(target))
            await self._write_month(target)
            success = True
        finally:
            self._guard.finish(target, success)
            logger.info(
                "monthly_generation_finished",
                month=_month_label(target),
                success=success,
            )
        return True

    async def retry_pending_months(self) -> list[date]:
        """Regenerate every month whose earlier run failed, earliest first.

        A month that fails again stays pending and the remaining months are
        still attempted.

        Returns:
            The months regenerated by this call.
        """
        regenerated: list[date] = []
        for month in self._guard.pending_months():
            logger.info("monthly_generation_retry", month=_month_label(month))
            try:
                if await self.generate_monthly_reports(month):
                    regenerated.append(month)
            except (ReportGenerationError, EventLogUnavailableError) as exc:
                logger.error("monthly_generation_retry_failed", month=_month_label(month), error=str(exc))
        return regenerated

    async def _write_month(self, month: date) -> None:
        reports_dir = self._settings.reports_dir
        label = _month_label(month)
        final_dir = reports_dir / label
        staging_dir = reports_dir / f"{label}.partial"

        await asyncio.to_thread(_reset_staging, staging_dir)
        try:
            await self._render_month(month, staging_dir)
        except BaseException:
            await asyncio.to_thread(shutil.rmtree, staging_dir, ignore_errors=True)
            raise

        await asyncio.to_thread(_promote, staging_dir, final_dir, reports_dir / f"{label}.old")

    async def _render_month(self, month: date, out_dir: Path) -> None:
        snapshot = self._store.read()
        config = self._config_provider.get_config()
        sla = await self._sla.calculate(month, snapshot, now=self._clock.now())
        log_sla_violations(sla, month)
        statements = build_statements(snapshot, sla, config)

        failed: list[str] = []
        try:
            await asyncio.to_thread(
                self._renderer.write_monthly_overview, snapshot, sla, statements, out_dir, month
            )
        except Exception as exc:
            failed.append("overview")
            logger.error("monthly_overview_write_failed", month=_month_label(month), error=str(exc))

        for statement in statements:
            try:
                await asyncio.to_thread(
                    self._renderer.write_member_report,
                    statement.member_id,
                    snapshot,
                    sla,
                    statement,
                    out_dir,
                    month,
                )
            except Exception as exc:
                failed.append(statement.member_id)
                logger.error(
                    "monthly_member_report_write_failed",
                    month=_month_label(month),
                    member_id=statement.member_id,
                    error=str(exc),
                )

        if failed:
            raise ReportGenerationError(
                f"monthly generation for {_month_label(month)} failed for {len(failed)} artifact(s)",
                failed_artifacts=failed,
            )
