"""Atomic, versioned holder of the current cost Summary."""
from __future__ import annotations

import threading

from ibp_billing.core.models import MemberCost, ServiceCost, Summary


def copy_summary(summary: Summary) -> Summary:
    """Deep copy of a Summary with fresh maps at every level."""
    members = {
        member_id: MemberCost(
            member_id=cost.member_id,
            service_costs=dict(cost.service_costs),
            total=cost.total,
        )
        for member_id, cost in summary.members.items()
    }
    services = {
        service_name: ServiceCost(
            service_name=cost.service_name,
            member_costs=dict(cost.member_costs),
            total=cost.total,
        )
        for service_name, cost in summary.services.items()
    }
    return Summary(members=members, services=services, generated_at=summary.generated_at)


class SummaryStore:
    """Owns the live Summary and serves independent copies of it.

    publish() replaces the snapshot as one unit; read() copies it under the
    same lock, so a reader always sees one snapshot in full. The lock is held
    only for the swap or the copy, never across I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._summary = Summary()
        self._version = 0

    def publish(self, summary: Summary) -> int:
        """Replace the current snapshot and return the new version number."""
        private = copy_summary(summary)
        with self._lock:
            self._summary = private
            self._version += 1
            return self._version

    def read(self) -> Summary:
        """Return a deep copy of the current snapshot."""
        with self._lock:
            return copy_summary(self._summary)

    @property
    def version(self) -> int:
        """Number of publishes so far; 0 before the first refresh."""
        with self._lock:
            return self._version
