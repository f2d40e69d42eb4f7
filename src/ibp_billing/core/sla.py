"""SLA evaluation and billing statements.

Uptime formula:
    hours_up       = max(0, hours_total - hours_down)
    uptime_percent = hours_up / hours_total * 100     (100 when hours_total == 0)
    meets_sla      = uptime_percent >= threshold      (boundary inclusive)

Billing is multiplicative: billed = base_cost * uptime_percent / 100, so the
credit is proportional to the downtime fraction and never exceeds base cost.
"""
from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timezone
from decimal import Decimal

from ibp_billing.core.config import BillingConfig
from ibp_billing.core.downtime import merge_downtime, select_service_events
from ibp_billing.core.interfaces import IConfigProvider, IEventLog
from ibp_billing.core.models import (
    DEFAULT_SLA_THRESHOLD,
    DowntimeEvent,
    HUNDRED,
    ZERO,
    MemberStatement,
    PortfolioTotals,
    ServiceBillingLine,
    SLABreakdown,
    SLASummary,
    Summary,
    hours_between,
)
from ibp_billing.errors import EventLogUnavailableError
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


def _as_decimal(value: Decimal | float | int) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def evaluate(
    hours_total: Decimal | float | int,
    hours_down: Decimal | float | int,
    threshold: Decimal | float | int = DEFAULT_SLA_THRESHOLD,
) -> SLABreakdown:
    """Compute the SLA breakdown for a period.

    Downtime is capped to [0, hours_total], so uptime never drops below 0%.
    """
    total = _as_decimal(hours_total)
    down = min(max(_as_decimal(hours_down), ZERO), max(total, ZERO))
    limit = _as_decimal(threshold)

    up = max(ZERO, total - down)
    uptime_percent = up * HUNDRED / total if total > ZERO else HUNDRED

    return SLABreakdown(
        hours_total=total,
        hours_down=down,
        hours_up=up,
        uptime_percent=uptime_percent,
        threshold=limit,
        meets_sla=uptime_percent >= limit,
    )


def billed_amount(base_cost: Decimal, breakdown: SLABreakdown) -> Decimal:
    """Base cost scaled by the uptime fraction."""
    return base_cost * breakdown.uptime_percent / HUNDRED


def credit_amount(base_cost: Decimal, breakdown: SLABreakdown) -> Decimal:
    """SLA credit owed for a pair: base cost minus billed amount."""
    return base_cost - billed_amount(base_cost, breakdown)


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def month_start(value: date | datetime) -> date:
    """First day of the month containing value."""
    return date(value.year, value.month, 1)


def add_months(month: date, count: int) -> date:
    """Shift a first-of-month date by count months."""
    index = month.year * 12 + (month.month - 1) + count
    return date(index // 12, index % 12 + 1, 1)


def previous_month(now: datetime) -> date:
    """First day of the calendar month before now."""
    return add_months(month_start(now), -1)


def month_bounds(month: date) -> tuple[datetime, datetime]:
    """UTC half-open bounds [start, end) of the month containing month."""
    first = month_start(month)
    following = add_months(first, 1)
    start = datetime(first.year, first.month, 1, tzinfo=timezone.utc)
    end = datetime(following.year, following.month, 1, tzinfo=timezone.utc)
    return start, end


# ---------------------------------------------------------------------------
# Monthly SLA table
# ---------------------------------------------------------------------------


class SLACalculator:
    """Compute the SLA table for every billed (member, service) pair of a month.

    The table is period-parameterized and therefore never cached: each call
    re-reads the event log.

    Args:
        config_provider: Source of member names and service domains.
        event_log: Downtime event query surface.
        threshold: Minimum uptime percentage for a pair to pass.
    """

    def __init__(
        self,
        config_provider: IConfigProvider,
        event_log: IEventLog,
        threshold: Decimal = DEFAULT_SLA_THRESHOLD,
    ) -> None:
        self._config_provider = config_provider
        self._event_log = event_log
        self._threshold = threshold

    async def calculate(
        self,
        month: date,
        summary: Summary,
        now: datetime | None = None,
    ) -> SLASummary:
        """Evaluate every pair in the snapshot for the given month.

        Args:
            month: Any date within the billing month.
            summary: Cost snapshot selecting which pairs are billed.
            now: Evaluation time used to close ongoing outages.

        Returns:
            member_id -> service_name -> SLABreakdown.

        Raises:
            EventLogUnavailableError: If any member's events cannot be read.
        """
        config = self._config_provider.get_config()
        period_start, period_end = month_bounds(month)
        hours_total = hours_between(period_start, period_end)

        table: SLASummary = {}
        for member_id in sorted(summary.members):
            member_cost = summary.members[member_id]
            events = await self.member_events(config, member_id, period_start, period_end)

            table[member_id] = {}
            for service_name in sorted(member_cost.service_costs):
                relevant = select_service_events(events, config.service_domains(service_name))
                merged = merge_downtime(relevant, period_start, period_end, now=now)
                breakdown = evaluate(hours_total, merged.total_down_hours, self._threshold)
                table[member_id][service_name] = breakdown

                if breakdown.hours_down > ZERO:
                    logger.info(
                        "sla_downtime_recorded",
                        member_id=member_id,
                        service=service_name,
                        hours_down=str(breakdown.hours_down),
                        uptime_percent=str(round(breakdown.uptime_percent, 4)),
                        intervals=len(merged.intervals),
                    )

        return table

    async def member_events(
        self,
        config: BillingConfig,
        member_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> list[DowntimeEvent]:
        """Down events of one member overlapping [period_start, period_end).

        Raises:
            EventLogUnavailableError: If the event log query fails.
        """
        member_name = config.event_log_name(member_id)
        try:
            return await self._event_log.list_member_events(member_name, period_start, period_end)
        except EventLogUnavailableError:
            raise
        except Exception as exc:
            logger.error(
                "sla_event_log_query_failed",
                member_id=member_id,
                member_name=member_name,
                error=str(exc),
            )
            raise EventLogUnavailableError(f"event log query failed for member {member_id}") from exc


def log_sla_violations(sla: SLASummary, month: date) -> int:
    """Log every failing pair in sorted order and return the violation count."""
    violations = 0
    for member_id in sorted(sla):
        for service_name in sorted(sla[member_id]):
            breakdown = sla[member_id][service_name]
            if breakdown.meets_sla:
                continue
            violations += 1
            logger.warning(
                "sla_violation",
                month=month.strftime("%Y-%m"),
                member_id=member_id,
                service=service_name,
                uptime_percent=str(round(breakdown.uptime_percent, 4)),
                threshold=str(breakdown.threshold),
                hours_down=str(breakdown.hours_down),
            )
    logger.info("sla_violations_counted", month=month.strftime("%Y-%m"), violations=violations)
    return violations


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------


def lookup_breakdown(sla: SLASummary, member_id: str, service_name: str) -> SLABreakdown:
    """Fetch a pair's breakdown.

    Raises:
        KeyError: If the pair was not evaluated. Missing data is never
            treated as 100% uptime.
    """
    try:
        return sla[member_id][service_name]
    except KeyError:
        raise KeyError(f"no SLA breakdown for {member_id}/{service_name}") from None


def build_statement(
    member_id: str,
    summary: Summary,
    sla: SLASummary,
    level: int = 0,
) -> MemberStatement:
    """Build one member's SLA-adjusted statement."""
    member_cost = summary.members[member_id]
    lines: list[ServiceBillingLine] = []
    for service_name in sorted(member_cost.service_costs):
        base = member_cost.service_costs[service_name]
        breakdown = lookup_breakdown(sla, member_id, service_name)
        billed = billed_amount(base, breakdown)
        lines.append(
            ServiceBillingLine(
                service_name=service_name,
                base_cost=base,
                uptime_percent=breakdown.uptime_percent,
                billed=billed,
                credit=base - billed,
                meets_sla=breakdown.meets_sla,
            )
        )

    return MemberStatement(
        member_id=member_id,
        level=level,
        lines=lines,
        total_base=sum((line.base_cost for line in lines), ZERO),
        total_billed=sum((line.billed for line in lines), ZERO),
        total_credits=sum((line.credit for line in lines), ZERO),
        meets_sla=all(line.meets_sla for line in lines),
    )


def build_statements(
    summary: Summary,
    sla: SLASummary,
    config: BillingConfig | None = None,
) -> list[MemberStatement]:
    """Statements for every member in the snapshot, sorted by member ID."""
    statements = []
    for member_id in sorted(summary.members):
        member = config.members.get(member_id) if config is not None else None
        level = member.level if member is not None else 0
        statements.append(build_statement(member_id, summary, sla, level))
    return statements


def summarize_statements(statements: list[MemberStatement]) -> PortfolioTotals:
    """Portfolio-wide totals across member statements."""
    distribution: Counter[str] = Counter()
    violations = 0
    for statement in statements:
        for line in statement.lines:
            distribution[line.service_name] += 1
            if not line.meets_sla:
                violations += 1

    return PortfolioTotals(
        member_count=len(statements),
        total_base=sum((s.total_base for s in statements), ZERO),
        total_billed=sum((s.total_billed for s in statements), ZERO),
        total_credits=sum((s.total_credits for s in statements), ZERO),
        sla_violations=violations,
        service_distribution=dict(sorted(distribution.items())),
    )
