"""In-memory :class:`NetworkAPI` used by the reconciler tests.

State lives in plain dicts that tests may seed directly. Every mutating call is
journaled so tests can assert on exactly which operations a reconciliation
issued.
"""

from __future__ import annotations

import itertools
import threading
from ipaddress import IPv4Address

from napi_ingress_controller.errors import NetworkAPIError, NotFoundError
from napi_ingress_controller.models import IP, VIP, Equipment, Pool
from napi_ingress_controller.networkapi import NetworkAPI


class FakeNetworkAPI(NetworkAPI):
    """Deterministic NetworkAPI double.

    Parameters
    ----------
    vips, pools, equipments:
        Seed state keyed by name/identifier.
    ips:
        Seed IPs keyed by id.
    first_id:
        First id handed out to created resources.
    """

    def __init__(
        self,
        vips: dict[str, VIP] | None = None,
        pools: dict[str, Pool] | None = None,
        equipments: dict[str, Equipment] | None = None,
        ips: dict[int, IP] | None = None,
        first_id: int = 1000,
    ) -> None:
        self.vips: dict[str, VIP] = dict(vips or {})
        self.pools: dict[str, Pool] = dict(pools or {})
        self.equipments: dict[str, Equipment] = dict(equipments or {})
        self.ips: dict[int, IP] = dict(ips or {})
        self._ids = itertools.count(first_id)
        self._lock = threading.Lock()

        self.vip_creates: list[VIP] = []
        self.vip_updates: list[VIP] = []
        self.vip_deploys: list[int] = []
        self.vip_deletes: list[VIP] = []
        self.pool_creates: list[Pool] = []
        self.pool_updates: list[Pool] = []
        self.pool_deletes: list[int] = []
        self.equipment_creates: list[Equipment] = []
        self.ip_creates: list[IP] = []
        self.ip_deletes: list[int] = []
        self.vip_ip_allocations: list[tuple[str, int]] = []
        # (kind, name) of every delete, in call order
        self.deletes: list[tuple[str, str]] = []

    def reset_journal(self) -> None:
        for journal in (
            self.vip_creates,
            self.vip_updates,
            self.vip_deploys,
            self.vip_deletes,
            self.pool_creates,
            self.pool_updates,
            self.pool_deletes,
            self.equipment_creates,
            self.ip_creates,
            self.ip_deletes,
            self.vip_ip_allocations,
            self.deletes,
        ):
            journal.clear()

    def _next_id(self) -> int:
        return next(self._ids)

    # -- VIP --------------------------------------------------------------------

    def get_vip(self, name: str) -> VIP:
        with self._lock:
            if name not in self.vips:
                raise NotFoundError(f"vip {name} not found")
            return self.vips[name].model_copy(deep=True)

    def create_vip(self, vip: VIP) -> VIP:
        with self._lock:
            if vip.name in self.vips:
                raise NetworkAPIError(f"vip {vip.name} already exists")
            created = vip.model_copy(deep=True, update={"id": self._next_id(), "created": False})
            for port in created.ports:
                port.id = self._next_id()
                for pool in port.pools:
                    pool.id = self._next_id()
            self.vips[created.name] = created
            self.vip_creates.append(vip)
            return created.model_copy(deep=True)

    def update_vip(self, vip: VIP) -> VIP:
        with self._lock:
            current = self._vip_by_id(vip.id)
            if current.name != vip.name:
                del self.vips[current.name]
            stored = vip.model_copy(deep=True)
            for port in stored.ports:
                if port.id is None:
                    port.id = self._next_id()
                for pool in port.pools:
                    if pool.id is None:
                        pool.id = self._next_id()
            self.vips[stored.name] = stored
            self.vip_updates.append(vip)
            return stored.model_copy(deep=True)

    def deploy_vip(self, vip_id: int) -> None:
        with self._lock:
            current = self._vip_by_id(vip_id)
            current.created = True
            self.vip_deploys.append(vip_id)

    def delete_vip(self, vip: VIP) -> None:
        with self._lock:
            current = self._vip_by_id(vip.id)
            del self.vips[current.name]
            self.vip_deletes.append(vip)
            self.deletes.append(("vip", current.name))

    def _vip_by_id(self, vip_id: int | None) -> VIP:
        for vip in self.vips.values():
            if vip.id == vip_id:
                return vip
        raise NotFoundError(f"vip {vip_id} not found")

    # -- Pool -------------------------------------------------------------------

    def get_pool(self, identifier: str) -> Pool:
        with self._lock:
            if identifier not in self.pools:
                raise NotFoundError(f"pool {identifier} not found")
            return self.pools[identifier].model_copy(deep=True)

    def create_pool(self, pool: Pool) -> Pool:
        with self._lock:
            if pool.identifier in self.pools:
                raise NetworkAPIError(f"pool {pool.identifier} already exists")
            created = pool.model_copy(deep=True, update={"id": self._next_id()})
            for member in created.server_pool_members:
                member.id = self._next_id()
            self.pools[created.identifier] = created
            self.pool_creates.append(pool)
            return created.model_copy(deep=True)

    def update_pool(self, pool: Pool) -> Pool:
        with self._lock:
            current = self._pool_by_id(pool.id)
            if current.identifier != pool.identifier:
                del self.pools[current.identifier]
            stored = pool.model_copy(deep=True)
            for member in stored.server_pool_members:
                if member.id is None:
                    member.id = self._next_id()
            self.pools[stored.identifier] = stored
            self.pool_updates.append(pool)
            return stored.model_copy(deep=True)

    def delete_pool(self, pool_id: int) -> None:
        with self._lock:
            current = self._pool_by_id(pool_id)
            del self.pools[current.identifier]
            self.pool_deletes.append(pool_id)
            self.deletes.append(("pool", current.identifier))

    def _pool_by_id(self, pool_id: int | None) -> Pool:
        for pool in self.pools.values():
            if pool.id == pool_id:
                return pool
        raise NotFoundError(f"pool {pool_id} not found")

    # -- Equipment --------------------------------------------------------------

    def get_equipment(self, name: str) -> Equipment:
        with self._lock:
            if name not in self.equipments:
                raise NotFoundError(f"equipment {name} not found")
            return self.equipments[name].model_copy(deep=True)

    def create_equipment(self, equipment: Equipment) -> Equipment:
        with self._lock:
            created = equipment.model_copy(deep=True, update={"id": self._next_id()})
            self.equipments[created.name] = created
            self.equipment_creates.append(equipment)
            return created.model_copy(deep=True)

    # -- IP ---------------------------------------------------------------------

    def get_ip_by_name(self, name: str) -> IP:
        with self._lock:
            for ip in self.ips.values():
                if ip.description == name:
                    return ip.model_copy(deep=True)
            raise NotFoundError(f"ip {name} not found")

    def get_ip_by_net_ip(self, address: IPv4Address, network_id: int) -> IP:
        with self._lock:
            for ip in self.ips.values():
                if ip.to_address() == IPv4Address(address) and ip.network_ipv4_id == network_id:
                    return ip.model_copy(deep=True)
            raise NotFoundError(f"ip {address} not found in network {network_id}")

    def get_ip_by_id(self, ip_id: int) -> IP:
        with self._lock:
            if ip_id not in self.ips:
                raise NotFoundError(f"ip {ip_id} not found")
            return self.ips[ip_id].model_copy(deep=True)

    def create_ip(self, ip: IP) -> IP:
        with self._lock:
            created = ip.model_copy(deep=True, update={"id": self._next_id()})
            self.ips[created.id] = created
            self.ip_creates.append(ip)
            return created.model_copy(deep=True)

    def delete_ip(self, ip_id: int) -> None:
        with self._lock:
            if ip_id not in self.ips:
                raise NotFoundError(f"ip {ip_id} not found")
            self.deletes.append(("ip", self.ips[ip_id].description))
            del self.ips[ip_id]
            self.ip_deletes.append(ip_id)

    def create_vip_ipv4(self, name: str, vip_environment_id: int) -> IP:
        with self._lock:
            ip_id = self._next_id()
            # 192.168.0.0/16 gives every allocation a distinct, stable address
            created = IP.from_address(
                IPv4Address(int(IPv4Address("192.168.0.0")) + (ip_id % 65536)),
                id=ip_id,
                description=name,
            )
            self.ips[ip_id] = created
            self.vip_ip_allocations.append((name, vip_environment_id))
            return created.model_copy(deep=True)
