"""Data models for the NetworkAPI Ingress Controller.

NetworkAPI resources are pydantic models mirroring the v3 JSON payloads. Reference
fields (``environment``, ``ipv4``, ``server_pool``, ...) come back from the API
either as a plain id or as a nested object depending on the requested ``kind``;
both are normalised to the integer id so that desired and current resources
compare structurally with ``==``.
"""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _ref_id(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


Ref = Annotated[int | None, BeforeValidator(_ref_id)]


class _APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_api_payload(self) -> dict[str, Any]:
        """Serialize to the dict expected by the NetworkAPI."""
        return self.model_dump(by_alias=True, exclude_none=True)


class IDOnly(_APIModel):
    id: int


# ---------------------------------------------------------------------------
# IP
# ---------------------------------------------------------------------------


class IP(_APIModel):
    """An IPv4 address registered in a NetworkAPI network."""

    id: int | None = None
    oct1: int = Field(default=0, ge=0, le=255)
    oct2: int = Field(default=0, ge=0, le=255)
    oct3: int = Field(default=0, ge=0, le=255)
    oct4: int = Field(default=0, ge=0, le=255)
    network_ipv4_id: Ref = Field(default=None, alias="networkipv4")
    description: str = ""
    equipments: list[IDOnly] = Field(default_factory=list)

    @classmethod
    def from_address(cls, address: IPv4Address | str, **kwargs: Any) -> IP:
        """Build an :class:`IP` holding the four octets of ``address``."""
        o1, o2, o3, o4 = IPv4Address(address).packed
        return cls(oct1=o1, oct2=o2, oct3=o3, oct4=o4, **kwargs)

    def to_address(self) -> IPv4Address:
        return IPv4Address(bytes([self.oct1, self.oct2, self.oct3, self.oct4]))


# ---------------------------------------------------------------------------
# Equipment
# ---------------------------------------------------------------------------


class EquipmentEnvironment(_APIModel):
    environment: Ref
    is_router: bool = False
    is_controller: bool = False


class Equipment(_APIModel):
    """A backend host (pod node or LoadBalancer address) known to NetworkAPI."""

    id: int | None = None
    name: str
    equipment_type: Ref = None
    model: Ref = None
    environments: list[EquipmentEnvironment] = Field(default_factory=list)
    groups: list[IDOnly] = Field(default_factory=list)
    maintenance: bool = False


# ---------------------------------------------------------------------------
# Pool
# ---------------------------------------------------------------------------


class PoolMemberIP(_APIModel):
    id: int
    ip_formated: str = ""


class PoolMember(_APIModel):
    id: int | None = None
    ip: PoolMemberIP | None = None
    ipv6: PoolMemberIP | None = None
    port_real: int
    priority: int = 0
    weight: int = 0
    limit: int = 0
    member_status: int = 0


class HealthCheck(_APIModel):
    identifier: str = ""
    healthcheck_type: str = "TCP"
    healthcheck_request: str = ""
    healthcheck_expect: str = ""
    destination: str = "*:*"


class ServiceDownAction(_APIModel):
    name: str = "none"


class Pool(_APIModel):
    """A server pool: the set of reals a VIP port forwards to."""

    id: int | None = None
    identifier: str
    default_port: int = 80
    environment: Ref = None
    servicedownaction: ServiceDownAction = Field(default_factory=ServiceDownAction)
    lb_method: str = "round-robin"
    healthcheck: HealthCheck = Field(default_factory=HealthCheck)
    default_limit: int = 0
    server_pool_members: list[PoolMember] = Field(default_factory=list)
    pool_created: bool = False


# ---------------------------------------------------------------------------
# VIP
# ---------------------------------------------------------------------------


class VIPPool(_APIModel):
    id: int | None = None
    server_pool: Ref = None
    l7_rule: Ref = None
    l7_value: str = ""
    order: int | None = None


class VIPPortOptions(_APIModel):
    l4_protocol: Ref = None
    l7_protocol: Ref = None


class VIPPort(_APIModel):
    id: int | None = None
    port: int
    options: VIPPortOptions | None = None
    pools: list[VIPPool] = Field(default_factory=list)


class VIPOptions(_APIModel):
    cache_group: Ref = None
    traffic_return: Ref = None
    timeout: Ref = None
    persistence: Ref = None


class VIP(_APIModel):
    """A virtual IP request: the address clients connect to plus its ports."""

    id: int | None = None
    name: str
    service: str = ""
    business: str = ""
    environmentvip: Ref = None
    ipv4: Ref = None
    ipv6: Ref = None
    options: VIPOptions | None = None
    ports: list[VIPPort] = Field(default_factory=list)
    created: bool = False


# ---------------------------------------------------------------------------
# Kubernetes side
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObjectKey:
    """Namespace/name of a Kubernetes object."""

    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: Any) -> ObjectKey:
        return cls(namespace=obj.metadata.namespace or "", name=obj.metadata.name or "")

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Target:
    """A concrete backend endpoint recomputed on every reconciliation."""

    ip: IPv4Address
    port: int
    network_id: int
    tls: bool = False
