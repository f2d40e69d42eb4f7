"""Abstract interfaces (Protocol classes) for the IBP billing engine.

The core depends on these interfaces, not concrete implementations. This
keeps the engine free of SQLAlchemy, file formats and wall-clock time, and
lets tests inject doubles including a virtual clock.
"""

from datetime import date, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from ibp_billing.core.config import BillingConfig
from ibp_billing.core.models import DowntimeEvent, GenerationState, MemberStatement, SLASummary, Summary


@runtime_checkable
class IConfigProvider(Protocol):
    """Source of the members/services/pricing configuration."""

    def get_config(self) -> BillingConfig:
        """Return the current configuration as a point-in-time snapshot."""
        ...


@runtime_checkable
class IEventLog(Protocol):
    """Query surface over recorded downtime events."""

    async def list_member_events(
        self,
        member_name: str,
        start: datetime,
        end: datetime,
    ) -> list[DowntimeEvent]:
        """List down events for a member overlapping [start, end)."""
        ...

    async def ping(self) -> None:
        """Raise if the event log cannot be reached."""
        ...


@runtime_checkable
class IReportRenderer(Protocol):
    """Writes finished summaries and SLA tables to artifacts."""

    def write_daily_report(self, summary: Summary, out_dir: Path, day: date) -> Path:
        """Write the daily service-cost artifact, replacing any earlier one for the day."""
        ...

    def write_monthly_overview(
        self,
        summary: Summary,
        sla: SLASummary,
        statements: list[MemberStatement],
        out_dir: Path,
        month: date,
    ) -> Path:
        """Write the monthly overview artifact."""
        ...

    def write_member_report(
        self,
        member_id: str,
        summary: Summary,
        sla: SLASummary,
        statement: MemberStatement,
        out_dir: Path,
        month: date,
    ) -> Path:
        """Write one member's monthly statement artifact."""
        ...


@runtime_checkable
class IGenerationStateStore(Protocol):
    """Durable record of generated and failed billing months."""

    def load(self) -> GenerationState:
        """Return the recorded state; an empty state if nothing was recorded."""
        ...

    def save(self, state: GenerationState) -> None:
        """Record the last generated month and the months awaiting retry."""
        ...


@runtime_checkable
class Clock(Protocol):
    """Time source for the scheduler."""

    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        ...

    async def sleep_until(self, when: datetime) -> None:
        """Suspend until when (returns immediately if it is already past)."""
        ...
