"""FastAPI router for the IBP billing query API.

All routes are thin: they validate inputs, call BillingService, and return
Pydantic response models. No aggregation logic belongs here.

Endpoints:
  GET  /api/v1/health               Liveness and snapshot freshness
  GET  /api/v1/billing/summary      Portfolio totals for the current snapshot and month
  GET  /api/v1/billing/breakdown    Per-member statements for a month
        Query params: year, month (default: previous month), member
  GET  /api/v1/billing/sla          Raw SLA table for a month
        Query params: year, month (default: previous month)
  GET  /api/v1/downtime/events      Outages overlapping a month
        Query params: year, month (default: previous month), member
  GET  /api/v1/downtime/current     Outages still open
  GET  /api/v1/downtime/summary     Per-member merged downtime for a month
        Query params: year, month (default: previous month), member
  GET  /api/v1/reports              Finalized monthly artifacts
        Query params: year, month (default: every month)
  GET  /api/v1/reports/{month}/{filename}   Download one artifact

year and month must be passed together; a lone one is rejected with 422.
When the event log is unreachable, SLA and downtime endpoints answer 503
instead of reporting 100% uptime.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse

from ibp_billing.api.schemas import (
    BillingBreakdownResponse,
    BillingMemberResponse,
    BillingServiceLine,
    BillingSummaryResponse,
    CurrentDowntimeResponse,
    DowntimeEventResponse,
    DowntimeEventsResponse,
    DowntimeSummaryResponse,
    HealthResponse,
    MemberDowntimeResponse,
    ReportFileResponse,
    ReportListResponse,
    SLABreakdownResponse,
    SLATableResponse,
)
from ibp_billing.core.models import DowntimeEvent, MemberStatement, hours_between
from ibp_billing.core.services import BillingService
from ibp_billing.core.sla import month_start, previous_month, summarize_statements
from ibp_billing.errors import EventLogUnavailableError
from ibp_billing.observability import get_logger

logger = get_logger(__name__)

router = APIRouter()

_SLA_UNAVAILABLE = "sla data unavailable"
_DOWNTIME_UNAVAILABLE = "downtime data unavailable"


def get_billing_service(request: Request) -> BillingService:
    """Resolve the BillingService constructed at application startup."""
    return request.app.state.billing_service


ServiceDep = Annotated[BillingService, Depends(get_billing_service)]


def _cents(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _pct(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


def _requested_month(year: int | None, month: int | None) -> date | None:
    """The month named by a year/month query pair; year and month come together or not at all."""
    if year is None and month is None:
        return None
    if year is None or month is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="year and month must be given together",
        )
    return date(year, month, 1)


def _resolve_month(service: BillingService, year: int | None, month: int | None) -> date:
    requested = _requested_month(year, month)
    return requested if requested is not None else previous_month(service.clock.now())


def _member_response(statement: MemberStatement) -> BillingMemberResponse:
    return BillingMemberResponse(
        name=statement.member_id,
        level=statement.level,
        services=[
            BillingServiceLine(
                name=line.service_name,
                base_cost=_cents(line.base_cost),
                uptime_percentage=_pct(line.uptime_percent),
                billed_cost=_cents(line.billed),
                credits=_cents(line.credit),
                meets_sla=line.meets_sla,
            )
            for line in statement.lines
        ],
        total_base_cost=_cents(statement.total_base),
        total_billed=_cents(statement.total_billed),
        total_credits=_cents(statement.total_credits),
        meets_sla=statement.meets_sla,
    )


@router.get("/health", response_model=HealthResponse, summary="Liveness and snapshot freshness")
async def health(service: ServiceDep) -> HealthResponse:
    snapshot = service.get_summary()
    return HealthResponse(
        snapshot_version=service.store.version,
        last_refresh=snapshot.generated_at,
    )


@router.get(
    "/billing/breakdown",
    response_model=BillingBreakdownResponse,
    summary="SLA-adjusted billing statements for a month",
)
async def billing_breakdown(
    service: ServiceDep,
    year: Annotated[int | None, Query(ge=2020, le=2100)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
    member: Annotated[str | None, Query(min_length=1, max_length=255)] = None,
) -> BillingBreakdownResponse:
    billing_month = _resolve_month(service, year, month)
    try:
        statements = await service.billing_statements(billing_month, member_id=member)
    except EventLogUnavailableError as exc:
        logger.error("billing_breakdown_unavailable", month=billing_month.isoformat(), error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_SLA_UNAVAILABLE) from exc

    totals = summarize_statements(statements)
    return BillingBreakdownResponse(
        month=billing_month.strftime("%Y-%m"),
        members=[_member_response(s) for s in statements],
        total_base_cost=_cents(totals.total_base),
        total_billed=_cents(totals.total_billed),
        total_credits=_cents(totals.total_credits),
    )


@router.get(
    "/billing/summary",
    response_model=BillingSummaryResponse,
    summary="Portfolio totals with current-month SLA credits",
)
async def billing_summary(service: ServiceDep) -> BillingSummaryResponse:
    snapshot = service.get_summary()
    current_month = month_start(service.clock.now())
    try:
        statements = await service.billing_statements(current_month)
    except EventLogUnavailableError as exc:
        logger.error("billing_summary_unavailable", error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_SLA_UNAVAILABLE) from exc

    totals = summarize_statements(statements)
    return BillingSummaryResponse(
        last_refresh=snapshot.generated_at,
        total_members=len(snapshot.members),
        total_services=sum(len(m.service_costs) for m in snapshot.members.values()),
        unique_services=len(totals.service_distribution),
        total_base_cost_monthly=_cents(snapshot.total()),
        current_month_credits=_cents(totals.total_credits),
        current_month_sla_violations=totals.sla_violations,
        service_distribution=totals.service_distribution,
    )


@router.get("/billing/sla", response_model=SLATableResponse, summary="SLA table for a month")
async def billing_sla(
    service: ServiceDep,
    year: Annotated[int | None, Query(ge=2020, le=2100)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
) -> SLATableResponse:
    billing_month = _resolve_month(service, year, month)
    try:
        sla = await service.calculate_sla(billing_month)
    except EventLogUnavailableError as exc:
        logger.error("billing_sla_unavailable", month=billing_month.isoformat(), error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_SLA_UNAVAILABLE) from exc

    return SLATableResponse(
        month=billing_month.strftime("%Y-%m"),
        members={
            member_id: {
                service_name: SLABreakdownResponse(
                    hours_total=float(breakdown.hours_total),
                    hours_down=float(breakdown.hours_down),
                    hours_up=float(breakdown.hours_up),
                    uptime_percentage=_pct(breakdown.uptime_percent),
                    sla_threshold=float(breakdown.threshold),
                    meets_sla=breakdown.meets_sla,
                )
                for service_name, breakdown in sorted(services.items())
            }
            for member_id, services in sorted(sla.items())
        },
    )


# ---------------------------------------------------------------------------
# Downtime
# ---------------------------------------------------------------------------


def _event_response(member_id: str, event: DowntimeEvent, now: datetime) -> DowntimeEventResponse:
    end = event.end if event.end is not None else now
    return DowntimeEventResponse(
        member=member_id,
        check_type=event.check_type.value,
        domain=event.domain,
        start_time=event.start,
        end_time=event.end,
        status="ongoing" if event.is_open else "resolved",
        duration_hours=_pct(max(hours_between(event.start, end), Decimal("0"))),
    )


@router.get(
    "/downtime/events",
    response_model=DowntimeEventsResponse,
    summary="Outages overlapping a month",
)
async def downtime_events(
    service: ServiceDep,
    year: Annotated[int | None, Query(ge=2020, le=2100)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
    member: Annotated[str | None, Query(min_length=1, max_length=255)] = None,
) -> DowntimeEventsResponse:
    period = _resolve_month(service, year, month)
    try:
        events = await service.downtime_events(period, member_id=member)
    except EventLogUnavailableError as exc:
        logger.error("downtime_events_unavailable", month=period.isoformat(), error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_DOWNTIME_UNAVAILABLE) from exc

    now = service.clock.now()
    return DowntimeEventsResponse(
        month=period.strftime("%Y-%m"),
        events=[_event_response(member_id, event, now) for member_id, event in events],
    )


@router.get(
    "/downtime/current",
    response_model=CurrentDowntimeResponse,
    summary="Outages that are still open",
)
async def downtime_current(service: ServiceDep) -> CurrentDowntimeResponse:
    now = service.clock.now()
    try:
        events = await service.current_outages()
    except EventLogUnavailableError as exc:
        logger.error("downtime_current_unavailable", error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_DOWNTIME_UNAVAILABLE) from exc

    return CurrentDowntimeResponse(
        as_of=now,
        events=[_event_response(member_id, event, now) for member_id, event in events],
    )


@router.get(
    "/downtime/summary",
    response_model=DowntimeSummaryResponse,
    summary="Per-member downtime totals for a month",
)
async def downtime_summary(
    service: ServiceDep,
    year: Annotated[int | None, Query(ge=2020, le=2100)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
    member: Annotated[str | None, Query(min_length=1, max_length=255)] = None,
) -> DowntimeSummaryResponse:
    period = _resolve_month(service, year, month)
    try:
        totals = await service.downtime_summary(period, member_id=member)
    except EventLogUnavailableError as exc:
        logger.error("downtime_summary_unavailable", month=period.isoformat(), error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_DOWNTIME_UNAVAILABLE) from exc

    return DowntimeSummaryResponse(
        month=period.strftime("%Y-%m"),
        total_events=sum(t.events for t in totals),
        ongoing_events=sum(t.ongoing for t in totals),
        affected_members=sum(1 for t in totals if t.events),
        total_downtime_hours=_pct(sum((t.hours_down for t in totals), Decimal("0"))),
        members=[
            MemberDowntimeResponse(
                member=t.member_id,
                events=t.events,
                ongoing=t.ongoing,
                hours_down=_pct(t.hours_down),
            )
            for t in totals
        ],
    )


# ---------------------------------------------------------------------------
# Generated reports
# ---------------------------------------------------------------------------


@router.get("/reports", response_model=ReportListResponse, summary="Finalized monthly artifacts")
async def list_reports(
    service: ServiceDep,
    year: Annotated[int | None, Query(ge=2020, le=2100)] = None,
    month: Annotated[int | None, Query(ge=1, le=12)] = None,
) -> ReportListResponse:
    artifacts = await service.list_reports(_requested_month(year, month))
    return ReportListResponse(
        reports=[
            ReportFileResponse(month=a.month, name=a.name, size=a.size, modified=a.modified)
            for a in artifacts
        ]
    )


@router.get("/reports/{month}/{filename}", response_class=FileResponse, summary="Download one artifact")
async def download_report(service: ServiceDep, month: str, filename: str) -> FileResponse:
    path = await service.report_path(month, filename)
    if path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="report not found")
    return FileResponse(path, filename=filename)
