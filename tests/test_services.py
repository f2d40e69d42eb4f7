"""Unit tests for BillingService.

All collaborators are in-memory fakes; report artifacts land in tmp_path.
"""

import asyncio
import shutil
import threading
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from conftest import (
    FakeEventLog,
    FakeRenderer,
    StaticConfigProvider,
    VirtualClock,
    domain_event,
    site_event,
    utc,
)

from ibp_billing.adapters.state_file import JsonGenerationStateStore
from ibp_billing.core.services import BillingService
from ibp_billing.errors import ConfigurationError, EventLogUnavailableError, ReportGenerationError
from ibp_billing.settings import Settings

JANUARY = date(2026, 1, 1)
FEBRUARY = date(2026, 2, 1)


@pytest.fixture
def service(
    config_provider: StaticConfigProvider,
    event_log: FakeEventLog,
    renderer: FakeRenderer,
    settings: Settings,
    clock: VirtualClock,
) -> BillingService:
    """Provide a BillingService wired to fakes with one refresh already published."""
    billing = BillingService(
        config_provider=config_provider,
        event_log=event_log,
        renderer=renderer,
        settings=settings,
        clock=clock,
    )
    billing.refresh()
    return billing


def _tree(root) -> dict[str, str]:
    return {str(p.relative_to(root)): p.read_text() for p in sorted(root.rglob("*")) if p.is_file()}


class TestStartupCheck:
    """Tests for BillingService.startup_check()."""

    @pytest.mark.asyncio
    async def test_passes_with_config_and_event_log(self, service: BillingService) -> None:
        await service.startup_check()

    @pytest.mark.asyncio
    async def test_unreachable_event_log_is_fatal(self, service: BillingService, event_log: FakeEventLog) -> None:
        event_log.fail = True
        with pytest.raises(EventLogUnavailableError):
            await service.startup_check()

    @pytest.mark.asyncio
    async def test_missing_configuration_is_fatal(
        self,
        event_log: FakeEventLog,
        renderer: FakeRenderer,
        settings: Settings,
        clock: VirtualClock,
    ) -> None:
        provider = MagicMock()
        provider.get_config.side_effect = ConfigurationError("config file not found")
        billing = BillingService(provider, event_log, renderer, settings, clock)

        with pytest.raises(ConfigurationError):
            await billing.startup_check()


class TestRefresh:
    """Tests for BillingService.refresh() and get_summary()."""

    def test_refresh_publishes_summary(self, service: BillingService, now) -> None:
        summary = service.get_summary()
        assert summary.total() == Decimal("1896")
        assert summary.generated_at == now
        assert service.store.version == 1

    def test_refresh_picks_up_configuration_changes(
        self, service: BillingService, config_provider: StaticConfigProvider
    ) -> None:
        members = dict(config_provider.config.members)
        del members["beta"]
        config_provider.config = config_provider.config.model_copy(update={"members": members})

        service.refresh(verbose=True)

        summary = service.get_summary()
        assert set(summary.members) == {"alpha"}
        assert summary.services["Polkadot"].member_costs == {"alpha": Decimal("588")}
        assert service.store.version == 2

    def test_failed_refresh_keeps_previous_snapshot(
        self, service: BillingService, config_provider: StaticConfigProvider
    ) -> None:
        config_provider.get_config = MagicMock(side_effect=ConfigurationError("invalid"))

        with pytest.raises(ConfigurationError):
            service.refresh()

        assert service.get_summary().total() == Decimal("1896")
        assert service.store.version == 1


class TestBillingStatements:
    """Tests for BillingService.calculate_sla() and billing_statements()."""

    @pytest.mark.asyncio
    async def test_sla_uses_clock_as_evaluation_time(
        self, service: BillingService, event_log: FakeEventLog
    ) -> None:
        # still open; the clock reads 12:00 on 2026-03-15
        event_log.events["beta"] = [site_event(utc(2026, 3, 15, 9), None)]

        sla = await service.calculate_sla(date(2026, 3, 10))

        assert sla["beta"]["Polkadot"].hours_down == Decimal("3")

    @pytest.mark.asyncio
    async def test_statements_for_one_member(self, service: BillingService) -> None:
        statements = await service.billing_statements(FEBRUARY, member_id="alpha")

        assert [s.member_id for s in statements] == ["alpha"]
        assert statements[0].total_billed == Decimal("720")
        assert statements[0].level == 5

    @pytest.mark.asyncio
    async def test_unknown_member_yields_no_statements(self, service: BillingService) -> None:
        assert await service.billing_statements(FEBRUARY, member_id="zeta") == []


class TestDailyReport:
    """Tests for BillingService.generate_daily_report()."""

    @pytest.mark.asyncio
    async def test_writes_into_reports_dir(
        self, service: BillingService, renderer: FakeRenderer, settings: Settings
    ) -> None:
        path = await service.generate_daily_report()

        assert path.parent == settings.reports_dir
        assert path.read_text() == "1896"
        assert renderer.daily == [date(2026, 3, 15)]

    @pytest.mark.asyncio
    async def test_rerun_overwrites(self, service: BillingService, renderer: FakeRenderer) -> None:
        first = await service.generate_daily_report()
        second = await service.generate_daily_report()
        assert first == second
        assert len(renderer.daily) == 2


class TestMonthlyReports:
    """Tests for BillingService.generate_monthly_reports()."""

    @pytest.mark.asyncio
    async def test_defaults_to_previous_month(
        self, service: BillingService, renderer: FakeRenderer, settings: Settings
    ) -> None:
        assert await service.generate_monthly_reports() is True

        final_dir = settings.reports_dir / "2026-02"
        assert _tree(final_dir) == {
            "overview.txt": "2",
            "member_alpha.txt": "720",
            "member_beta.txt": "1176",
        }
        assert not (settings.reports_dir / "2026-02.partial").exists()
        assert renderer.overviews == [FEBRUARY]
        assert service.guard.is_generated(FEBRUARY)

    @pytest.mark.asyncio
    async def test_second_run_for_same_month_is_noop(self, service: BillingService, renderer: FakeRenderer) -> None:
        assert await service.generate_monthly_reports(FEBRUARY) is True
        assert await service.generate_monthly_reports(FEBRUARY) is False
        assert renderer.overviews == [FEBRUARY]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_generate_once(self, service: BillingService, renderer: FakeRenderer) -> None:
        results = await asyncio.gather(
            service.generate_monthly_reports(FEBRUARY),
            service.generate_monthly_reports(FEBRUARY),
        )

        assert sorted(results) == [False, True]
        assert renderer.overviews == [FEBRUARY]
        assert sorted(m for m, _ in renderer.member_writes) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_failed_artifact_leaves_no_partial_month(
        self, service: BillingService, renderer: FakeRenderer, settings: Settings
    ) -> None:
        renderer.fail_members = {"alpha"}

        with pytest.raises(ReportGenerationError) as exc_info:
            await service.generate_monthly_reports(FEBRUARY)

        assert exc_info.value.failed_artifacts == ["alpha"]
        assert not (settings.reports_dir / "2026-02").exists()
        assert not (settings.reports_dir / "2026-02.partial").exists()
        state = service.guard.snapshot()
        assert state.last_generated_month is None
        assert state.in_progress is False
        assert state.pending_months == [FEBRUARY]

    @pytest.mark.asyncio
    async def test_retry_after_failure_matches_clean_run(
        self,
        service: BillingService,
        renderer: FakeRenderer,
        settings: Settings,
        config_provider: StaticConfigProvider,
        event_log: FakeEventLog,
        clock: VirtualClock,
        tmp_path,
    ) -> None:
        renderer.fail_overview = True
        with pytest.raises(ReportGenerationError):
            await service.generate_monthly_reports(FEBRUARY)

        renderer.fail_overview = False
        assert await service.generate_monthly_reports(FEBRUARY) is True
        retried = _tree(settings.reports_dir / "2026-02")

        clean_settings = settings.model_copy(update={"work_dir": tmp_path / "clean"})
        clean = BillingService(config_provider, event_log, FakeRenderer(), clean_settings, clock)
        clean.refresh()
        assert await clean.generate_monthly_reports(FEBRUARY) is True

        assert retried == _tree(clean_settings.reports_dir / "2026-02")

    @pytest.mark.asyncio
    async def test_event_log_failure_aborts_without_recording(
        self, service: BillingService, event_log: FakeEventLog, settings: Settings
    ) -> None:
        event_log.fail = True

        with pytest.raises(EventLogUnavailableError):
            await service.generate_monthly_reports(FEBRUARY)

        assert not service.guard.is_generated(FEBRUARY)
        assert not (settings.reports_dir / "2026-02.partial").exists()

    @pytest.mark.asyncio
    async def test_forced_regeneration_replaces_directory(
        self, service: BillingService, renderer: FakeRenderer, settings: Settings
    ) -> None:
        stale = settings.reports_dir / "2026-02"
        stale.mkdir(parents=True)
        (stale / "stale.txt").write_text("old")

        assert await service.generate_monthly_reports(FEBRUARY) is True

        assert not (stale / "stale.txt").exists()
        assert (stale / "overview.txt").exists()
        assert not (settings.reports_dir / "2026-02.old").exists()

    @pytest.mark.asyncio
    async def test_directory_work_runs_off_the_event_loop(
        self, service: BillingService, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        loop_thread = threading.current_thread()
        threads: list[threading.Thread] = []
        real_rmtree = shutil.rmtree

        def recording_rmtree(*args, **kwargs):
            threads.append(threading.current_thread())
            return real_rmtree(*args, **kwargs)

        monkeypatch.setattr(shutil, "rmtree", recording_rmtree)

        assert await service.generate_monthly_reports(FEBRUARY) is True

        assert threads
        assert all(thread is not loop_thread for thread in threads)

    @pytest.mark.asyncio
    async def test_generated_month_survives_restart(
        self,
        config_provider: StaticConfigProvider,
        event_log: FakeEventLog,
        settings: Settings,
        clock: VirtualClock,
    ) -> None:
        state_store = JsonGenerationStateStore(settings.generation_state_path)
        first = BillingService(config_provider, event_log, FakeRenderer(), settings, clock, state_store)
        first.refresh()
        assert await first.generate_monthly_reports(FEBRUARY) is True

        restarted_renderer = FakeRenderer()
        restarted = BillingService(
            config_provider,
            event_log,
            restarted_renderer,
            settings,
            clock,
            JsonGenerationStateStore(settings.generation_state_path),
        )
        restarted.refresh()

        assert await restarted.generate_monthly_reports(FEBRUARY) is False
        assert restarted_renderer.overviews == []

    @pytest.mark.asyncio
    async def test_failed_month_is_regenerated_after_a_later_month(
        self, service: BillingService, renderer: FakeRenderer, settings: Settings
    ) -> None:
        renderer.fail_overview = True
        with pytest.raises(ReportGenerationError):
            await service.generate_monthly_reports(JANUARY)
        renderer.fail_overview = False
        assert await service.generate_monthly_reports(FEBRUARY) is True

        assert await service.retry_pending_months() == [JANUARY]

        assert renderer.overviews == [FEBRUARY, JANUARY]
        assert (settings.reports_dir / "2026-01" / "overview.txt").exists()
        state = service.guard.snapshot()
        assert state.pending_months == []
        assert state.last_generated_month == FEBRUARY

    @pytest.mark.asyncio
    async def test_retry_that_fails_again_stays_pending(
        self, service: BillingService, renderer: FakeRenderer, event_log: FakeEventLog
    ) -> None:
        event_log.fail = True
        with pytest.raises(EventLogUnavailableError):
            await service.generate_monthly_reports(JANUARY)
        renderer.fail_members = {"beta"}
        event_log.fail = False
        with pytest.raises(ReportGenerationError):
            await service.generate_monthly_reports(FEBRUARY)

        renderer.fail_members = set()
        event_log.fail = True
        assert await service.retry_pending_months() == []
        assert service.guard.pending_months() == [JANUARY, FEBRUARY]

        event_log.fail = False
        assert await service.retry_pending_months() == [JANUARY, FEBRUARY]
        assert service.guard.pending_months() == []

    @pytest.mark.asyncio
    async def test_nothing_pending_is_a_noop(self, service: BillingService, renderer: FakeRenderer) -> None:
        assert await service.retry_pending_months() == []
        assert renderer.overviews == []

    @pytest.mark.asyncio
    async def test_pending_month_survives_restart(
        self,
        config_provider: StaticConfigProvider,
        event_log: FakeEventLog,
        settings: Settings,
        clock: VirtualClock,
    ) -> None:
        failing_renderer = FakeRenderer()
        failing_renderer.fail_overview = True
        first = BillingService(
            config_provider,
            event_log,
            failing_renderer,
            settings,
            clock,
            JsonGenerationStateStore(settings.generation_state_path),
        )
        first.refresh()
        with pytest.raises(ReportGenerationError):
            await first.generate_monthly_reports(JANUARY)

        restarted_renderer = FakeRenderer()
        restarted = BillingService(
            config_provider,
            event_log,
            restarted_renderer,
            settings,
            clock,
            JsonGenerationStateStore(settings.generation_state_path),
        )
        restarted.refresh()

        assert restarted.guard.pending_months() == [JANUARY]
        assert await restarted.retry_pending_months() == [JANUARY]
        assert restarted_renderer.overviews == [JANUARY]


class TestDowntime:
    """Tests for the downtime read operations."""

    @pytest.mark.asyncio
    async def test_events_are_tagged_with_member_and_newest_first(
        self, service: BillingService, event_log: FakeEventLog
    ) -> None:
        event_log.events["Alpha Nodes"] = [site_event(utc(2026, 2, 3), utc(2026, 2, 3, 2))]
        event_log.events["beta"] = [domain_event("polkadot.dotters.network", utc(2026, 2, 10), None)]

        events = await service.downtime_events(FEBRUARY)

        assert [(member, event.start) for member, event in events] == [
            ("beta", utc(2026, 2, 10)),
            ("alpha", utc(2026, 2, 3)),
        ]
        assert event_log.queries[0] == ("Alpha Nodes", utc(2026, 2, 1), utc(2026, 3, 1))

    @pytest.mark.asyncio
    async def test_events_for_one_member(self, service: BillingService, event_log: FakeEventLog) -> None:
        event_log.events["Alpha Nodes"] = [site_event(utc(2026, 2, 3), utc(2026, 2, 3, 2))]

        assert await service.downtime_events(FEBRUARY, member_id="beta") == []
        assert [name for name, _, _ in event_log.queries] == ["beta"]

    @pytest.mark.asyncio
    async def test_current_outages_are_open_events_only(
        self, service: BillingService, event_log: FakeEventLog, now
    ) -> None:
        event_log.events["Alpha Nodes"] = [
            site_event(utc(2026, 3, 14), utc(2026, 3, 14, 1)),
            domain_event("kusama.dotters.network", utc(2026, 3, 15, 9), None),
        ]

        outages = await service.current_outages()

        assert [(member, event.domain) for member, event in outages] == [("alpha", "kusama.dotters.network")]
        assert all(start == now for _, start, _ in event_log.queries)

    @pytest.mark.asyncio
    async def test_summary_merges_overlapping_outages(
        self, service: BillingService, event_log: FakeEventLog
    ) -> None:
        event_log.events["Alpha Nodes"] = [
            site_event(utc(2026, 2, 3), utc(2026, 2, 3, 2)),
            domain_event("polkadot.dotters.network", utc(2026, 2, 3, 1), utc(2026, 2, 3, 3)),
        ]
        # still open; clamped to the end of February
        event_log.events["beta"] = [site_event(utc(2026, 2, 28), None)]

        totals = {t.member_id: t for t in await service.downtime_summary(FEBRUARY)}

        assert set(totals) == {"alpha", "beta", "gamma", "delta"}
        assert totals["alpha"].events == 2
        assert totals["alpha"].hours_down == Decimal("3")
        assert totals["beta"].ongoing == 1
        assert totals["beta"].hours_down == Decimal("24")
        assert totals["gamma"].hours_down == Decimal("0")

    @pytest.mark.asyncio
    async def test_event_log_outage_raises(self, service: BillingService, event_log: FakeEventLog) -> None:
        event_log.fail = True
        with pytest.raises(EventLogUnavailableError):
            await service.downtime_events(FEBRUARY)
        with pytest.raises(EventLogUnavailableError):
            await service.current_outages()
        with pytest.raises(EventLogUnavailableError):
            await service.downtime_summary(FEBRUARY)


class TestReportListing:
    """Tests for BillingService.list_reports() and report_path()."""

    @pytest.mark.asyncio
    async def test_lists_finalized_months_only(self, service: BillingService, settings: Settings) -> None:
        assert await service.list_reports() == []

        await service.generate_monthly_reports(FEBRUARY)
        await service.generate_daily_report()
        (settings.reports_dir / "2026-03.partial").mkdir()
        (settings.reports_dir / "2026-03.partial" / "overview.txt").write_text("1")

        artifacts = await service.list_reports()

        assert [(a.month, a.name) for a in artifacts] == [
            ("2026-02", "member_alpha.txt"),
            ("2026-02", "member_beta.txt"),
            ("2026-02", "overview.txt"),
        ]
        assert artifacts[2].size == 1
        assert await service.list_reports(date(2026, 1, 1)) == []

    @pytest.mark.asyncio
    async def test_report_path(self, service: BillingService, settings: Settings) -> None:
        await service.generate_monthly_reports(FEBRUARY)

        expected = settings.reports_dir / "2026-02" / "overview.txt"
        assert await service.report_path("2026-02", "overview.txt") == expected
        assert await service.report_path("2026-02", "missing.txt") is None
        assert await service.report_path("2026-02", "../billing_state.json") is None
        assert await service.report_path("2026-02", "..") is None
        assert await service.report_path("2026-13", "overview.txt") is None
        assert await service.report_path("2026-02.partial", "overview.txt") is None
