"""Shared test fixtures for ibp-billing tests."""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

from datetime import date, datetime, timedelta, timezone

import pytest

from ibp_billing.core.config import (
    BillingConfig,
    MemberConfig,
    RegionalPriceSheet,
    ResourceAllocation,
    ServiceConfig,
)
from ibp_billing.core.models import CheckType, DowntimeEvent, MemberStatement, SLASummary, Summary
from ibp_billing.settings import Settings


class ClockExhausted(Exception):
    """Raised by VirtualClock once its sleep budget is used up."""


class VirtualClock:
    """Clock whose sleeps jump time forward instantly and are recorded."""

    def __init__(self, now: datetime, max_sleeps: int | None = None) -> None:
        self.current = now
        self.sleeps: list[datetime] = []
        self._max_sleeps = max_sleeps

    def now(self) -> datetime:
        return self.current

    async def sleep_until(self, when: datetime) -> None:
        if self._max_sleeps is not None and len(self.sleeps) >= self._max_sleeps:
            raise ClockExhausted()
        self.sleeps.append(when)
        if when > self.current:
            self.current = when

    def advance(self, delta: timedelta) -> None:
        self.current += delta


class StaticConfigProvider:
    """IConfigProvider returning a fixed BillingConfig."""

    def __init__(self, config: BillingConfig) -> None:
        self.config = config
        self.calls = 0

    def get_config(self) -> BillingConfig:
        self.calls += 1
        return self.config


class FakeEventLog:
    """In-memory IEventLog keyed by member event-log name."""

    def __init__(self, events: dict[str, list[DowntimeEvent]] | None = None) -> None:
        self.events = events or {}
        self.fail = False
        self.queries: list[tuple[str, datetime, datetime]] = []

    async def list_member_events(self, member_name: str, start: datetime, end: datetime) -> list[DowntimeEvent]:
        self.queries.append((member_name, start, end))
        if self.fail:
            raise ConnectionError("event log down")
        return list(self.events.get(member_name, []))

    async def ping(self) -> None:
        if self.fail:
            raise ConnectionError("event log down")


class FakeRenderer:
    """IReportRenderer writing one marker file per artifact.

    Member IDs listed in fail_members raise on write.
    """

    def __init__(self) -> None:
        self.fail_members: set[str] = set()
        self.fail_overview = False
        self.daily: list[date] = []
        self.overviews: list[date] = []
        self.member_writes: list[tuple[str, date]] = []

    def write_daily_report(self, summary: Summary, out_dir: Path, day: date) -> Path:
        self.daily.append(day)
        path = out_dir / f"daily_{day.isoformat()}.txt"
        path.write_text(format(summary.total().normalize(), "f"))
        return path

    def write_monthly_overview(
        self,
        summary: Summary,
        sla: SLASummary,
        statements: list[MemberStatement],
        out_dir: Path,
        month: date,
    ) -> Path:
        if self.fail_overview:
            raise OSError("disk full")
        self.overviews.append(month)
        path = out_dir / "overview.txt"
        path.write_text(str(len(statements)))
        return path

    def write_member_report(
        self,
        member_id: str,
        summary: Summary,
        sla: SLASummary,
        statement: MemberStatement,
        out_dir: Path,
        month: date,
    ) -> Path:
        if member_id in self.fail_members:
            raise OSError(f"cannot write {member_id}")
        self.member_writes.append((member_id, month))
        path = out_dir / f"member_{member_id}.txt"
        path.write_text(format(statement.total_billed.normalize(), "f"))
        return path


def utc(*args: int) -> datetime:
    """Shorthand for an aware UTC datetime."""
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time (mid-month)."""
    return utc(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def clock(now: datetime) -> VirtualClock:
    return VirtualClock(now)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Provide test settings rooted in a temporary directory."""
    return Settings(
        work_dir=tmp_path / "work",
        config_path=tmp_path / "config.json",
        database_url="sqlite+aiosqlite:///:memory:",
        startup_catchup_delay_seconds=0,
        scheduler_enabled=False,
        json_logs=False,
    )


@pytest.fixture
def billing_config() -> BillingConfig:
    """Two priced members, one unpriced member, one member with no billable service.

    Expected costs at the "europe" prices:
      Polkadot instance = 2 × (8×10 + 32×2 + 1000×0.1 + 5000×0.01) = 588
      Kusama instance   = 1 × (4×10 + 16×2 + 500×0.1 + 1000×0.01)  = 132
      alpha = 588 + 132 = 720, beta = 588 × 2 (two groups) = 1176
    """
    return BillingConfig(
        pricing={
            "europe": RegionalPriceSheet(
                price_per_core="10",
                price_per_gb_memory="2",
                price_per_gb_disk="0.1",
                price_per_gb_bandwidth="0.01",
            ),
        },
        services={
            "Polkadot": ServiceConfig(
                resources=ResourceAllocation(nodes=2, cores=8, memory_gb=32, disk_gb=1000, bandwidth_gb=5000),
                level=1,
                rpc_urls=["wss://polkadot.dotters.network", "https://polkadot.dotters.network/rpc"],
            ),
            "Kusama": ServiceConfig(
                resources=ResourceAllocation(nodes=1, cores=4, memory_gb=16, disk_gb=500, bandwidth_gb=1000),
                level=1,
                rpc_urls=["wss://kusama.dotters.network:443"],
            ),
            "Retired": ServiceConfig(
                resources=ResourceAllocation(nodes=1, cores=1),
                active=False,
            ),
        },
        members={
            "alpha": MemberConfig(
                name="Alpha Nodes",
                region="Europe",
                level=5,
                service_assignments={"rpc": ["Polkadot", "Kusama"]},
            ),
            "beta": MemberConfig(
                region=" EUROPE ",
                level=3,
                service_assignments={"rpc": ["Polkadot"], "archive": ["Polkadot"]},
            ),
            "gamma": MemberConfig(
                region="mars",
                service_assignments={"rpc": ["Polkadot"]},
            ),
            "delta": MemberConfig(
                region="europe",
                service_assignments={"rpc": ["Retired", "Westend"]},
            ),
        },
    )


@pytest.fixture
def config_provider(billing_config: BillingConfig) -> StaticConfigProvider:
    return StaticConfigProvider(billing_config)


@pytest.fixture
def event_log() -> FakeEventLog:
    return FakeEventLog()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


def site_event(start: datetime, end: datetime | None) -> DowntimeEvent:
    return DowntimeEvent(check_type=CheckType.SITE, start=start, end=end)


def domain_event(domain: str, start: datetime, end: datetime | None) -> DowntimeEvent:
    return DowntimeEvent(check_type=CheckType.DOMAIN, start=start, end=end, domain=domain)
