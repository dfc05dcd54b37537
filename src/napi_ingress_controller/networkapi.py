"""NetworkAPI capability interface and its HTTP client (v3 JSON, legacy XML for VIP IPs)."""

from __future__ import annotations

import abc
import json
import xml.etree.ElementTree as ET
from ipaddress import IPv4Address
from typing import Any

import httpx
import structlog

from napi_ingress_controller.errors import NetworkAPIError, NotFoundError
from napi_ingress_controller.models import IP, VIP, Equipment, Pool

logger = structlog.get_logger(__name__)


class NetworkAPI(abc.ABC):
    """Operations the reconciler needs from NetworkAPI.

    Every ``get_*`` raises :class:`NotFoundError` when the resource does not exist.
    Updates of pools and VIPs must carry the ids NetworkAPI assigned to nested
    members/ports, otherwise NetworkAPI creates new ones instead.
    """

    @abc.abstractmethod
    def get_vip(self, name: str) -> VIP: ...

    @abc.abstractmethod
    def create_vip(self, vip: VIP) -> VIP: ...

    @abc.abstractmethod
    def update_vip(self, vip: VIP) -> VIP: ...

    @abc.abstractmethod
    def deploy_vip(self, vip_id: int) -> None: ...

    @abc.abstractmethod
    def delete_vip(self, vip: VIP) -> None: ...

    @abc.abstractmethod
    def get_pool(self, identifier: str) -> Pool: ...

    @abc.abstractmethod
    def create_pool(self, pool: Pool) -> Pool: ...

    @abc.abstractmethod
    def update_pool(self, pool: Pool) -> Pool: ...

    @abc.abstractmethod
    def delete_pool(self, pool_id: int) -> None: ...

    @abc.abstractmethod
    def get_equipment(self, name: str) -> Equipment: ...

    @abc.abstractmethod
    def create_equipment(self, equipment: Equipment) -> Equipment: ...

    @abc.abstractmethod
    def get_ip_by_name(self, name: str) -> IP: ...

    @abc.abstractmethod
    def get_ip_by_net_ip(self, address: IPv4Address, network_id: int) -> IP: ...

    @abc.abstractmethod
    def get_ip_by_id(self, ip_id: int) -> IP: ...

    @abc.abstractmethod
    def create_ip(self, ip: IP) -> IP: ...

    @abc.abstractmethod
    def delete_ip(self, ip_id: int) -> None: ...

    @abc.abstractmethod
    def create_vip_ipv4(self, name: str, vip_environment_id: int) -> IP:
        """Allocate a free address from the VIP environment's network."""

    def close(self) -> None:
        """Release transport resources, if any."""


class NetworkAPIClient(NetworkAPI):
    """Manages communication with the NetworkAPI REST API.

    Parameters
    ----------
    base_url:
        Root URL of the NetworkAPI instance (e.g. ``https://networkapi.example.com``).
    username, password:
        HTTP basic auth credentials. Auth is skipped when either is empty.
    timeout:
        HTTP timeout in seconds.
    """

    def __init__(self, base_url: str, username: str = "", password: str = "", timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self._client: httpx.Client | None = None

    # -- lifecycle --------------------------------------------------------------

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            auth = (self._username, self._password) if self._username and self._password else None
            self._client = httpx.Client(
                base_url=self._base_url,
                auth=auth,
                timeout=self._timeout,
                event_hooks={"response": [_log_response]},
            )
        return self._client

    def close(self) -> None:
        if self._client and not self._client.is_closed:
            self._client.close()

    # -- VIP --------------------------------------------------------------------

    def get_vip(self, name: str) -> VIP:
        raw = self._search("/api/v3/vip-request/", "vips", {"name": name}, f"get vip {name}")
        return VIP.model_validate(raw)

    def create_vip(self, vip: VIP) -> VIP:
        logger.info("creating_vip", name=vip.name)
        vip_id = self._post("/api/v3/vip-request/", "vips", vip.to_api_payload(), f"create vip {vip.name}")
        return vip.model_copy(update={"id": vip_id})

    def update_vip(self, vip: VIP) -> VIP:
        if vip.id is None:
            raise NetworkAPIError("Cannot update VIP without an ID")
        logger.info("updating_vip", id=vip.id, name=vip.name, created=vip.created)
        # Created VIPs only change on the equipment through the deploy endpoint
        path = f"/api/v3/vip-request/deploy/{vip.id}/" if vip.created else f"/api/v3/vip-request/{vip.id}/"
        resp = self.client.put(path, json={"vips": [vip.to_api_payload()]})
        self._check_response(resp, f"update vip {vip.id}")
        return vip

    def deploy_vip(self, vip_id: int) -> None:
        logger.info("deploying_vip", id=vip_id)
        resp = self.client.post(f"/api/v3/vip-request/deploy/{vip_id}/")
        self._check_response(resp, f"deploy vip {vip_id}")

    def delete_vip(self, vip: VIP) -> None:
        logger.info("deleting_vip", id=vip.id, name=vip.name, created=vip.created)
        if vip.created:
            resp = self.client.delete(f"/api/v3/vip-request/deploy/{vip.id}/")
            self._check_response(resp, f"undeploy vip {vip.id}")
        resp = self.client.delete(f"/api/v3/vip-request/{vip.id}/")
        self._check_response(resp, f"delete vip {vip.id}")

    # -- Pool -------------------------------------------------------------------

    def get_pool(self, identifier: str) -> Pool:
        raw = self._search("/api/v3/pool/", "server_pools", {"identifier": identifier}, f"get pool {identifier}")
        return Pool.model_validate(raw)

    def create_pool(self, pool: Pool) -> Pool:
        logger.info("creating_pool", identifier=pool.identifier)
        pool_id = self._post("/api/v3/pool/", "server_pools", pool.to_api_payload(), f"create pool {pool.identifier}")
        return pool.model_copy(update={"id": pool_id})

    def update_pool(self, pool: Pool) -> Pool:
        if pool.id is None:
            raise NetworkAPIError("Cannot update pool without an ID")
        logger.info("updating_pool", id=pool.id, identifier=pool.identifier, created=pool.pool_created)
        path = f"/api/v3/pool/deploy/{pool.id}/" if pool.pool_created else f"/api/v3/pool/{pool.id}/"
        resp = self.client.put(path, json={"server_pools": [pool.to_api_payload()]})
        self._check_response(resp, f"update pool {pool.id}")
        return pool

    def delete_pool(self, pool_id: int) -> None:
        logger.info("deleting_pool", id=pool_id)
        resp = self.client.delete(f"/api/v3/pool/{pool_id}/")
        self._check_response(resp, f"delete pool {pool_id}")

    # -- Equipment --------------------------------------------------------------

    def get_equipment(self, name: str) -> Equipment:
        raw = self._search("/api/v3/equipment/", "equipments", {"nome": name}, f"get equipment {name}")
        return Equipment.model_validate(raw)

    def create_equipment(self, equipment: Equipment) -> Equipment:
        logger.info("creating_equipment", name=equipment.name)
        equipment_id = self._post(
            "/api/v3/equipment/", "equipments", equipment.to_api_payload(), f"create equipment {equipment.name}"
        )
        return equipment.model_copy(update={"id": equipment_id})

    # -- IP ---------------------------------------------------------------------

    def get_ip_by_name(self, name: str) -> IP:
        raw = self._search("/api/v3/ipv4/", "ips", {"descricao": name}, f"get ip {name}")
        return IP.model_validate(raw)

    def get_ip_by_net_ip(self, address: IPv4Address, network_id: int) -> IP:
        o1, o2, o3, o4 = IPv4Address(address).packed
        criteria = {"oct1": o1, "oct2": o2, "oct3": o3, "oct4": o4, "networkipv4": network_id}
        raw = self._search("/api/v3/ipv4/", "ips", criteria, f"get ip {address}")
        return IP.model_validate(raw)

    def get_ip_by_id(self, ip_id: int) -> IP:
        resp = self.client.get(f"/api/v3/ipv4/{ip_id}/")
        self._check_response(resp, f"get ip {ip_id}")
        ips = resp.json().get("ips") or []
        if not ips:
            raise NotFoundError(f"ip {ip_id} not found", status_code=resp.status_code)
        return IP.model_validate(ips[0])

    def create_ip(self, ip: IP) -> IP:
        logger.info("creating_ip", address=str(ip.to_address()), network=ip.network_ipv4_id)
        ip_id = self._post("/api/v3/ipv4/", "ips", ip.to_api_payload(), f"create ip {ip.to_address()}")
        return ip.model_copy(update={"id": ip_id})

    def delete_ip(self, ip_id: int) -> None:
        logger.info("deleting_ip", id=ip_id)
        resp = self.client.delete(f"/api/v3/ipv4/{ip_id}/")
        self._check_response(resp, f"delete ip {ip_id}")

    def create_vip_ipv4(self, name: str, vip_environment_id: int) -> IP:
        logger.info("allocating_vip_ip", name=name, vip_environment_id=vip_environment_id)
        root = ET.Element("networkapi", versao="1.0")
        ip_map = ET.SubElement(root, "ip_map")
        ET.SubElement(ip_map, "id_evip").text = str(vip_environment_id)
        ET.SubElement(ip_map, "name").text = name
        resp = self.client.post(
            f"/ip/availableip4/vip/{vip_environment_id}/",
            content=ET.tostring(root, encoding="utf-8", xml_declaration=True),
            headers={"Content-Type": "application/xml"},
        )
        self._check_response(resp, f"allocate vip ip {name}")
        return self._parse_xml_ip(resp.text)

    # -- helpers ----------------------------------------------------------------

    def _search(self, path: str, collection: str, criteria: dict[str, Any], context: str) -> dict[str, Any]:
        """Return the single object matching ``criteria``, or raise :class:`NotFoundError`."""
        search = {"extends_search": [criteria], "start_record": 0, "end_record": 25}
        resp = self.client.get(path, params={"search": json.dumps(search), "kind": "details"})
        self._check_response(resp, context)
        items = resp.json().get(collection) or []
        if not items:
            raise NotFoundError(f"NetworkAPI resource not found during {context}", status_code=resp.status_code)
        if len(items) > 1:
            logger.warning("multiple_search_results", context=context, count=len(items))
        return items[0]

    def _post(self, path: str, collection: str, payload: dict[str, Any], context: str) -> int:
        """Create one object and return the id NetworkAPI assigned to it."""
        payload.pop("id", None)
        resp = self.client.post(path, json={collection: [payload]})
        self._check_response(resp, context)
        body = resp.json()
        ids = [item["id"] for item in body if isinstance(item, dict) and "id" in item] if isinstance(body, list) else []
        if len(ids) != 1:
            raise NetworkAPIError(
                f"NetworkAPI returned {len(ids)} ids during {context}",
                status_code=resp.status_code,
                body=body,
            )
        return int(ids[0])

    @staticmethod
    def _parse_xml_ip(text: str) -> IP:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as exc:
            raise NetworkAPIError(f"invalid XML from NetworkAPI: {exc}", body=text) from exc
        node = root.find("ip")
        if node is None:
            raise NetworkAPIError("no ip element in NetworkAPI response", body=text)

        def _field(tag: str) -> str:
            return (node.findtext(tag) or "").strip()

        try:
            return IP(
                id=int(_field("id")),
                oct1=int(_field("oct1")),
                oct2=int(_field("oct2")),
                oct3=int(_field("oct3")),
                oct4=int(_field("oct4")),
                network_ipv4_id=int(_field("networkipv4")) if _field("networkipv4") else None,
                description=_field("descricao"),
            )
        except ValueError as exc:
            raise NetworkAPIError(f"invalid ip in NetworkAPI response: {exc}", body=text) from exc

    @staticmethod
    def _check_response(resp: httpx.Response, context: str) -> None:
        """Raise on non-2xx responses."""
        if resp.status_code >= 400:
            body: Any = None
            try:
                body = resp.json()
            except ValueError:
                body = resp.text
            error_cls = NotFoundError if resp.status_code == 404 else NetworkAPIError
            raise error_cls(
                f"NetworkAPI error during {context}: HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )


def _log_response(resp: httpx.Response) -> None:
    logger.debug(
        "networkapi_request",
        method=resp.request.method,
        url=str(resp.request.url),
        status=resp.status_code,
    )
