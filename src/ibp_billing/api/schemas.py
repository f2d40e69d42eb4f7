"""Pydantic response schemas for the billing query API.

Monetary values are rounded half-up to cents and uptime percentages to four
decimal places before serialization.
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Liveness plus snapshot freshness.

    Attributes:
        status: Always "ok" when the process is serving.
        snapshot_version: Number of cost refreshes published so far.
        last_refresh: Timestamp of the current snapshot (None before the first refresh).
    """

    status: str = "ok"
    snapshot_version: int
    last_refresh: datetime | None = None


class BillingServiceLine(BaseModel):
    """One service of a member after SLA adjustment."""

    name: str
    base_cost: float
    uptime_percentage: float
    billed_cost: float
    credits: float
    meets_sla: bool


class BillingMemberResponse(BaseModel):
    """One member's statement."""

    name: str
    level: int
    services: list[BillingServiceLine]
    total_base_cost: float
    total_billed: float
    total_credits: float
    meets_sla: bool


class BillingBreakdownResponse(BaseModel):
    """Statements for every (or one) member for a billing month.

    Attributes:
        month: Billing month as YYYY-MM.
        members: Member statements sorted by member ID.
        total_base_cost: Sum of base costs.
        total_billed: Sum of SLA-adjusted amounts.
        total_credits: Sum of SLA credits.
    """

    month: str
    members: list[BillingMemberResponse]
    total_base_cost: float
    total_billed: float
    total_credits: float


class BillingSummaryResponse(BaseModel):
    """Portfolio overview of the current snapshot and the current month's SLA."""

    last_refresh: datetime | None = None
    total_members: int
    total_services: int = Field(description="Number of billed (member, service) pairs")
    unique_services: int
    total_base_cost_monthly: float
    current_month_credits: float
    current_month_sla_violations: int
    service_distribution: dict[str, int]


class SLABreakdownResponse(BaseModel):
    """Availability of one (member, service) pair."""

    hours_total: float
    hours_down: float
    hours_up: float
    uptime_percentage: float
    sla_threshold: float
    meets_sla: bool


class SLATableResponse(BaseModel):
    """SLA table for a billing month: member -> service -> breakdown."""

    month: str
    members: dict[str, dict[str, SLABreakdownResponse]]


class DowntimeEventResponse(BaseModel):
    """One recorded outage.

    Attributes:
        member: Member ID from configuration.
        check_type: site, domain or endpoint.
        domain: Domain the check targeted (None for site checks).
        start_time: When the outage began.
        end_time: When it was resolved; None while ongoing.
        status: "ongoing" or "resolved".
        duration_hours: Length so far for ongoing outages.
    """

    member: str
    check_type: str
    domain: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    status: str
    duration_hours: float


class DowntimeEventsResponse(BaseModel):
    """Outages overlapping a month, newest first."""

    month: str
    events: list[DowntimeEventResponse]


class CurrentDowntimeResponse(BaseModel):
    """Outages open at as_of, newest first."""

    as_of: datetime
    events: list[DowntimeEventResponse]


class MemberDowntimeResponse(BaseModel):
    member: str
    events: int
    ongoing: int
    hours_down: float


class DowntimeSummaryResponse(BaseModel):
    """Downtime totals for a month; hours are merged per member."""

    month: str
    total_events: int
    ongoing_events: int
    affected_members: int
    total_downtime_hours: float
    members: list[MemberDowntimeResponse]


class ReportFileResponse(BaseModel):
    month: str
    name: str
    size: int
    modified: datetime


class ReportListResponse(BaseModel):
    """Finalized monthly artifacts, newest month first."""

    reports: list[ReportFileResponse]
