"""Desired NetworkAPI state: resource names, pure builders and id carry-over.

Every name is a deterministic function of the cluster, the Ingress key and (for
equipment) the target address, so the same Ingress always maps to the same
NetworkAPI records. Nothing here talks to NetworkAPI.
"""

from __future__ import annotations

from ipaddress import IPv4Address

from napi_ingress_controller.config import InstanceConfig
from napi_ingress_controller.models import (
    IP,
    VIP,
    Equipment,
    EquipmentEnvironment,
    IDOnly,
    ObjectKey,
    Pool,
    PoolMember,
    PoolMemberIP,
    Target,
    VIPOptions,
    VIPPool,
    VIPPort,
    VIPPortOptions,
)

NAME_PREFIX = "kube-napi-ingress"

SCHEME_HTTP = "http"
SCHEME_HTTPS = "https"
SCHEME_PORTS = {SCHEME_HTTP: 80, SCHEME_HTTPS: 443}


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


def vip_name(cluster_name: str, key: ObjectKey) -> str:
    return f"{NAME_PREFIX}_{cluster_name}_{key.namespace}_{key.name}"


def pool_name(cluster_name: str, key: ObjectKey, scheme: str) -> str:
    return f"{vip_name(cluster_name, key)}_{scheme}"


def equipment_name(cluster_name: str, address: IPv4Address) -> str:
    return f"{NAME_PREFIX}_{cluster_name}_{address}"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def new_equipment(name: str, cfg: InstanceConfig) -> Equipment:
    settings = cfg.settings
    return Equipment(
        name=name,
        equipment_type=settings.equipment_type_id,
        model=settings.equipment_model_id,
        environments=[EquipmentEnvironment(environment=settings.equipment_environment_id)],
        groups=[IDOnly(id=settings.equipment_group_id)],
    )


def new_real_ip(target: Target, name: str, equipment: Equipment) -> IP:
    """The IP record of a target, tagged with its equipment."""
    return IP.from_address(
        target.ip,
        network_ipv4_id=target.network_id,
        description=name,
        equipments=[IDOnly(id=equipment.id)],
    )


def new_pool_member(target: Target, ip: IP) -> PoolMember:
    return PoolMember(
        ip=PoolMemberIP(id=ip.id, ip_formated=str(target.ip)),
        port_real=target.port,
        priority=1,
        weight=1,
        member_status=1,
    )


def new_pool(name: str, scheme: str, cfg: InstanceConfig, members: list[PoolMember]) -> Pool:
    return Pool(
        identifier=name,
        default_port=SCHEME_PORTS[scheme],
        environment=cfg.pool_environment_id,
        lb_method=cfg.lb_method,
        server_pool_members=sorted(members, key=lambda m: (m.ip.ip_formated if m.ip else "", m.port_real)),
    )


def new_vip_ports(pools: dict[str, Pool], cfg: InstanceConfig) -> list[VIPPort]:
    """One VIP port per scheme, each forwarding to that scheme's pool."""
    ports: list[VIPPort] = []
    for scheme in (SCHEME_HTTP, SCHEME_HTTPS):
        pool = pools.get(scheme)
        if pool is None:
            continue
        ports.append(
            VIPPort(
                port=SCHEME_PORTS[scheme],
                options=VIPPortOptions(l4_protocol=cfg.l4_protocol_id, l7_protocol=cfg.l7_protocol_id),
                pools=[VIPPool(server_pool=pool.id, l7_rule=cfg.l7_rule_id, l7_value="")],
            )
        )
    return ports


def new_vip(name: str, key: ObjectKey, cfg: InstanceConfig, ipv4_id: int | None, pools: dict[str, Pool]) -> VIP:
    return VIP(
        name=name,
        service=key.name,
        business=cfg.settings.cluster_name,
        environmentvip=cfg.vip_environment_id,
        ipv4=ipv4_id,
        options=VIPOptions(
            cache_group=cfg.cache_group_id,
            traffic_return=cfg.traffic_return_id,
            timeout=cfg.timeout_id,
            persistence=cfg.persistence_id,
        ),
        ports=new_vip_ports(pools, cfg),
    )


# ---------------------------------------------------------------------------
# Id carry-over
# ---------------------------------------------------------------------------


def fill_pool_update(desired: Pool, existing: Pool) -> Pool:
    """Copy NetworkAPI-assigned ids from ``existing`` into ``desired``.

    Members are matched by their IP id. Without their ids NetworkAPI would treat
    unchanged members as new ones.
    """
    by_ip_id = {m.ip.id: m for m in existing.server_pool_members if m.ip is not None}
    members = []
    for member in desired.server_pool_members:
        current = by_ip_id.get(member.ip.id) if member.ip is not None else None
        members.append(member.model_copy(update={"id": current.id}) if current is not None else member)
    return desired.model_copy(
        update={"id": existing.id, "pool_created": existing.pool_created, "server_pool_members": members}
    )


def _member_order(member: PoolMember) -> tuple[int, int]:
    return (member.ip.id if member.ip is not None else -1, member.port_real)


def same_pool(a: Pool, b: Pool) -> bool:
    """Structural equality of two pools, ignoring the order of their members."""

    def _normalized(pool: Pool) -> Pool:
        return pool.model_copy(update={"server_pool_members": sorted(pool.server_pool_members, key=_member_order)})

    return _normalized(a) == _normalized(b)


def fill_vip_update(desired: VIP, existing: VIP) -> VIP:
    """Copy NetworkAPI-assigned ids from ``existing`` into ``desired``.

    Ports are matched by port number and their pools by position.
    """
    by_number = {p.port: p for p in existing.ports}
    ports = []
    for port in desired.ports:
        current = by_number.get(port.port)
        if current is None:
            ports.append(port)
            continue
        pools = [
            pool.model_copy(update={"id": current.pools[i].id}) if i < len(current.pools) else pool
            for i, pool in enumerate(port.pools)
        ]
        ports.append(port.model_copy(update={"id": current.id, "pools": pools}))
    return desired.model_copy(update={"id": existing.id, "created": existing.created, "ports": ports})
