"""Domain value objects for the IBP billing engine.

Domain model:
  MemberCost         : one member's cost per service, plus total
  ServiceCost        : the transposed view: one service's cost per member
  Summary            : both views together, published as one snapshot
  DowntimeEvent      : raw availability event from the event log
  DowntimeInterval   : clamped, half-open downtime range
  SLABreakdown       : availability of one (member, service) pair for a month
  MemberStatement    : billed amounts and SLA credits for one member
  MemberDowntime     : one member's event counts and merged downtime for a month
  ReportArtifact     : one generated file under a finalized month directory
  GenerationState    : monthly generation dedup and retry state

All monetary values and hour counts are Decimal so that member and service
totals always agree exactly and the SLA boundary comparison is deterministic.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Minimum uptime percentage a pair must reach to pass its SLA
DEFAULT_SLA_THRESHOLD = Decimal("99.99")


class CheckType(str, enum.Enum):
    """Kind of check that produced a downtime event.

    Site checks apply to every service of a member; domain and endpoint
    checks apply only to services answering on the event's domain.
    """

    SITE = "site"
    DOMAIN = "domain"
    ENDPOINT = "endpoint"

    @classmethod
    def parse(cls, raw: str | int) -> CheckType:
        """Map textual or legacy numeric encodings onto the enum.

        Raises:
            ValueError: If the value is not a known check type.
        """
        value = str(raw).strip().lower()
        legacy = {"1": cls.SITE, "2": cls.DOMAIN, "3": cls.ENDPOINT}
        if value in legacy:
            return legacy[value]
        return cls(value)

    @property
    def is_site(self) -> bool:
        return self is CheckType.SITE


# ---------------------------------------------------------------------------
# Cost cross-index
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemberCost:
    """Cost breakdown for one member.

    Attributes:
        member_id: Member identifier from configuration.
        service_costs: Service name -> cost.
        total: Sum of service_costs.
    """

    member_id: str
    service_costs: dict[str, Decimal] = field(default_factory=dict)
    total: Decimal = ZERO


@dataclass(frozen=True)
class ServiceCost:
    """Cost breakdown for one service across all members."""

    service_name: str
    member_costs: dict[str, Decimal] = field(default_factory=dict)
    total: Decimal = ZERO


@dataclass(frozen=True)
class Summary:
    """Member and service cost views published together.

    A Summary is never mutated after publishing; a refresh builds a new one.
    generated_at is None only for the empty summary served before the first
    refresh completes.
    """

    members: dict[str, MemberCost] = field(default_factory=dict)
    services: dict[str, ServiceCost] = field(default_factory=dict)
    generated_at: datetime | None = None

    def total(self) -> Decimal:
        """Grand total across all members."""
        return sum((m.total for m in self.members.values()), ZERO)


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DowntimeEvent:
    """A raw downtime event for one member.

    Attributes:
        check_type: Which check raised the event.
        start: When the outage began (UTC).
        end: When it was resolved; None while still ongoing.
        domain: Domain the check targeted (None for site checks).
    """

    check_type: CheckType
    start: datetime
    end: datetime | None = None
    domain: str | None = None

    @property
    def is_open(self) -> bool:
        return self.end is None


@dataclass(frozen=True, order=True)
class DowntimeInterval:
    """Half-open downtime range [start, end)."""

    start: datetime
    end: datetime

    @property
    def hours(self) -> Decimal:
        return hours_between(self.start, self.end)


@dataclass(frozen=True)
class MergeResult:
    """Non-overlapping intervals and their total length in hours."""

    intervals: list[DowntimeInterval]
    total_down_hours: Decimal


@dataclass(frozen=True)
class MemberDowntime:
    """Downtime totals for one member over a period.

    hours_down is the merged length, so a site outage overlapping a domain
    outage is counted once.
    """

    member_id: str
    events: int
    ongoing: int
    hours_down: Decimal


@dataclass(frozen=True)
class SLABreakdown:
    """Availability of one (member, service) pair over a billing period."""

    hours_total: Decimal
    hours_down: Decimal
    hours_up: Decimal
    uptime_percent: Decimal
    threshold: Decimal
    meets_sla: bool

    @property
    def sla_hours(self) -> Decimal:
        """Hours of uptime the threshold requires."""
        return self.hours_total * self.threshold / HUNDRED


SLASummary = dict[str, dict[str, SLABreakdown]]


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServiceBillingLine:
    """Billed amount for one service of a member after SLA adjustment."""

    service_name: str
    base_cost: Decimal
    uptime_percent: Decimal
    billed: Decimal
    credit: Decimal
    meets_sla: bool


@dataclass(frozen=True)
class MemberStatement:
    """One member's billing statement for a month."""

    member_id: str
    level: int
    lines: list[ServiceBillingLine]
    total_base: Decimal
    total_billed: Decimal
    total_credits: Decimal
    meets_sla: bool


@dataclass(frozen=True)
class PortfolioTotals:
    """Totals across every member statement."""

    member_count: int
    total_base: Decimal
    total_billed: Decimal
    total_credits: Decimal
    sla_violations: int
    service_distribution: dict[str, int]


# ---------------------------------------------------------------------------
# Monthly generation
# ---------------------------------------------------------------------------


@dataclass
class GenerationState:
    """Process-wide monthly generation state.

    last_generated_month only moves forward, and only when a run for that
    month completes without errors. pending_months holds months whose run
    failed; they stay unfinished, even behind a later successful month,
    until a retry succeeds.
    """

    last_generated_month: date | None = None
    in_progress: bool = False
    pending_months: list[date] = field(default_factory=list)


@dataclass(frozen=True)
class ReportArtifact:
    """A file inside a finalized <YYYY-MM> report directory."""

    month: str
    name: str
    size: int
    modified: datetime


def hours_between(start: datetime, end: datetime) -> Decimal:
    """Exact number of hours from start to end."""
    delta = end - start
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    return Decimal(micros) / Decimal(3_600_000_000)
