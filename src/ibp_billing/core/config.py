"""Point-in-time configuration snapshot consumed by the billing engine.

Members, services and regional pricing are owned by an external provider.
The engine reads one BillingConfig per refresh cycle and never mutates it.
"""
from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


def normalize_key(value: str) -> str:
    """Lowercase and strip a region or service name for lookups."""
    return value.strip().lower()


def extract_domain(url: str) -> str:
    """Reduce an RPC URL to its lowercased host name.

    ``wss://rpc.dotters.network:443/polkadot`` becomes ``rpc.dotters.network``.
    """
    host = url.strip()
    for scheme in ("wss://", "ws://", "https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
            break
    host = host.split("/", 1)[0]
    host = host.split(":", 1)[0]
    return host.lower()


class ResourceAllocation(BaseModel):
    """Per-service-instance sizing.

    Attributes:
        nodes: Number of nodes backing one instance of the service.
        cores: CPU cores per node.
        memory_gb: Memory per node in GB.
        disk_gb: Disk per node in GB.
        bandwidth_gb: Monthly bandwidth per node in GB.
    """

    model_config = ConfigDict(frozen=True)

    nodes: int = Field(default=0, ge=0)
    cores: Decimal = Field(default=Decimal("0"), ge=0)
    memory_gb: Decimal = Field(default=Decimal("0"), ge=0)
    disk_gb: Decimal = Field(default=Decimal("0"), ge=0)
    bandwidth_gb: Decimal = Field(default=Decimal("0"), ge=0)


class RegionalPriceSheet(BaseModel):
    """Unit prices for one region."""

    model_config = ConfigDict(frozen=True)

    price_per_core: Decimal = Field(default=Decimal("0"), ge=0)
    price_per_gb_memory: Decimal = Field(default=Decimal("0"), ge=0)
    price_per_gb_disk: Decimal = Field(default=Decimal("0"), ge=0)
    price_per_gb_bandwidth: Decimal = Field(default=Decimal("0"), ge=0)


class ServiceConfig(BaseModel):
    """A hosted workload and the resources one instance of it consumes."""

    model_config = ConfigDict(frozen=True)

    resources: ResourceAllocation = Field(default_factory=ResourceAllocation)
    active: bool = True
    level: int = 0
    rpc_urls: list[str] = Field(default_factory=list)

    @property
    def domains(self) -> list[str]:
        """Distinct domains the service answers on, sorted."""
        return sorted({d for d in (extract_domain(u) for u in self.rpc_urls) if d})


class MemberConfig(BaseModel):
    """A billed network participant.

    Attributes:
        name: Name used by the event log. Falls back to the member ID when empty.
        region: Pricing region, matched case-insensitively.
        active: Inactive members are not billed.
        level: Membership level, reported on statements.
        service_assignments: Assignment group -> service names. The same
            service may appear in several groups; costs then add up.
    """

    model_config = ConfigDict(frozen=True)

    name: str = ""
    region: str
    active: bool = True
    level: int = 0
    service_assignments: dict[str, list[str]] = Field(default_factory=dict)


class BillingConfig(BaseModel):
    """Everything a refresh cycle needs, as read from the provider."""

    model_config = ConfigDict(frozen=True)

    members: dict[str, MemberConfig] = Field(default_factory=dict)
    services: dict[str, ServiceConfig] = Field(default_factory=dict)
    pricing: dict[str, RegionalPriceSheet] = Field(default_factory=dict)

    def event_log_name(self, member_id: str) -> str:
        """Name under which a member's events are recorded."""
        member = self.members.get(member_id)
        if member is None or not member.name:
            return member_id
        return member.name

    def find_service(self, service_name: str) -> ServiceConfig | None:
        """Case-insensitive service lookup."""
        wanted = normalize_key(service_name)
        for name, service in self.services.items():
            if normalize_key(name) == wanted:
                return service
        return None

    def service_domains(self, service_name: str) -> list[str]:
        """Domains associated with a service, empty when the service is unknown."""
        service = self.find_service(service_name)
        return service.domains if service is not None else []
