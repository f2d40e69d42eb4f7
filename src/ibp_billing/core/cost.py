"""Cost calculator: turns resource allocations and regional prices into costs.

Refresh policy: a member whose region has no price sheet, or a service that
is unknown or inactive, is skipped with a log entry. One misconfigured pair
never aborts the refresh for everyone else.

Key invariant:
  sum(MemberCost.total) == sum(ServiceCost.total) == sum of all pair costs
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from ibp_billing.core.config import (
    BillingConfig,
    RegionalPriceSheet,
    ResourceAllocation,
    ServiceConfig,
    normalize_key,
)
from ibp_billing.core.models import ZERO, MemberCost, ServiceCost, Summary
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


def cost_for_service_instance(resources: ResourceAllocation, price: RegionalPriceSheet) -> Decimal:
    """Monthly cost of one service instance at the given regional prices.

    Zero nodes yields zero cost.
    """
    if resources.nodes == 0:
        return ZERO
    per_node = (
        resources.cores * price.price_per_core
        + resources.memory_gb * price.price_per_gb_memory
        + resources.disk_gb * price.price_per_gb_disk
        + resources.bandwidth_gb * price.price_per_gb_bandwidth
    )
    return per_node * resources.nodes


def compute_summary(config: BillingConfig, generated_at: datetime) -> Summary:
    """Build the member/service cost cross-index from a configuration snapshot.

    Args:
        config: Point-in-time configuration.
        generated_at: Timestamp recorded on the resulting snapshot.

    Returns:
        A new Summary. Members and services with a zero total are omitted.
    """
    services_by_key: dict[str, ServiceConfig] = {
        normalize_key(name): svc for name, svc in config.services.items()
    }
    prices_by_region: dict[str, RegionalPriceSheet] = {
        normalize_key(region): sheet for region, sheet in config.pricing.items()
    }

    member_costs: dict[str, dict[str, Decimal]] = {}
    service_costs: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(lambda: ZERO))

    for member_id in sorted(config.members):
        member = config.members[member_id]
        if not member.active:
            logger.debug("billing_member_inactive_skipped", member_id=member_id)
            continue

        price = prices_by_region.get(normalize_key(member.region))
        if price is None:
            logger.warning(
                "billing_region_unpriced",
                member_id=member_id,
                region=member.region,
            )
            continue

        per_service: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for group in sorted(member.service_assignments):
            for service_name in member.service_assignments[group]:
                service = services_by_key.get(normalize_key(service_name))
                if service is None:
                    logger.warning(
                        "billing_unknown_service_skipped",
                        member_id=member_id,
                        service=service_name,
                    )
                    continue
                if not service.active:
                    logger.debug(
                        "billing_inactive_service_skipped",
                        member_id=member_id,
                        service=service_name,
                    )
                    continue

                cost = cost_for_service_instance(service.resources, price)
                per_service[service_name] += cost
                service_costs[service_name][member_id] += cost

        member_costs[member_id] = dict(per_service)

    members: dict[str, MemberCost] = {}
    for member_id, costs in member_costs.items():
        total = sum(costs.values(), ZERO)
        if total > ZERO:
            members[member_id] = MemberCost(member_id=member_id, service_costs=costs, total=total)

    # Pairs of dropped members are all zero, so they only need pruning here.
    services: dict[str, ServiceCost] = {}
    for service_name, per_member in service_costs.items():
        kept = {m: c for m, c in per_member.items() if m in members}
        total = sum(kept.values(), ZERO)
        if total > ZERO:
            services[service_name] = ServiceCost(service_name=service_name, member_costs=kept, total=total)

    return Summary(members=members, services=services, generated_at=generated_at)


def log_cost_breakdown(summary: Summary) -> None:
    """Log per-member and per-service breakdowns in sorted order."""
    for member_id in sorted(summary.members):
        member = summary.members[member_id]
        logger.info(
            "billing_member_cost",
            member_id=member_id,
            total=str(member.total),
            services={name: str(member.service_costs[name]) for name in sorted(member.service_costs)},
        )
    for service_name in sorted(summary.services):
        service = summary.services[service_name]
        logger.info(
            "billing_service_cost",
            service=service_name,
            total=str(service.total),
            members={m: str(service.member_costs[m]) for m in sorted(service.member_costs)},
        )
