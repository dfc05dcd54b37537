"""Resolution of an Ingress backend into concrete (IP, port, network, TLS) targets."""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address, ip_address
from typing import Any

import structlog

from napi_ingress_controller.config import InstanceConfig
from napi_ingress_controller.errors import TargetResolutionError
from napi_ingress_controller.ingress import service_backends
from napi_ingress_controller.models import ObjectKey, Target

logger = structlog.get_logger(__name__)

HTTPS_PORT = 443


@dataclass(frozen=True)
class _PortRef:
    name: str = ""
    number: int = 0

    @property
    def explicit(self) -> bool:
        return bool(self.name or self.number)

    def matches(self, port: Any) -> bool:
        if self.name:
            return self.name == port.name
        return bool(self.number) and self.number == port.port


def _port_refs(ing: Any) -> list[_PortRef]:
    refs: list[_PortRef] = []
    for backend in service_backends(ing):
        port = backend.port
        ref = _PortRef(name=(port.name or "") if port else "", number=(port.number or 0) if port else 0)
        if ref not in refs:
            refs.append(ref)
    return refs


def service_and_ports(kube: Any, ing: Any, service_name: str) -> tuple[Any, list[Any]]:
    """Fetch the backend Service of ``ing`` and the ServicePorts it routes to.

    A backend port matches a ServicePort by name first, else by number. With no
    port on the backend, a single-port Service defaults to that port. When the
    Ingress declares TLS, the Service's port 443 (if any) is routed as well.
    """
    namespace = ing.metadata.namespace
    key = ObjectKey(namespace, service_name)
    svc = kube.get_service(namespace, service_name)
    if svc is None:
        raise TargetResolutionError(f"could not fetch backend service {key}")
    if svc.spec is not None and svc.spec.type == "ExternalName":
        raise TargetResolutionError(f"backend service {key} of type ExternalName is not supported")

    svc_ports = list((svc.spec.ports if svc.spec else None) or [])
    if not svc_ports:
        raise TargetResolutionError(f"backend service {key} has no ports")

    refs = _port_refs(ing)
    matched = [p for p in svc_ports if any(ref.matches(p) for ref in refs)]
    if not matched:
        explicit = [ref for ref in refs if ref.explicit]
        if explicit:
            raise TargetResolutionError(f"backend service {key} has no port matching {explicit}")
        if len(svc_ports) > 1:
            raise TargetResolutionError(f"backend service {key} has more than one port, ingress must choose one")
        matched = svc_ports

    if ing.spec.tls:
        # TLS on the Ingress routes the Service's 443 to the HTTPS pool
        for port in svc_ports:
            if port.port == HTTPS_PORT and port not in matched:
                matched.append(port)

    return svc, matched


def resolve_targets(kube: Any, svc: Any, ports: list[Any], cfg: InstanceConfig) -> list[Target]:
    """Turn the Service and its matched ports into :class:`Target` tuples."""
    if svc.spec.type == "LoadBalancer":
        return _load_balancer_targets(svc, ports, cfg.settings.lb_network_id)
    return _endpoint_targets(kube, svc, ports, cfg.settings.pod_network_id)


def _load_balancer_targets(svc: Any, ports: list[Any], network_id: int) -> list[Target]:
    lb_status = svc.status.load_balancer if svc.status is not None else None
    lb_ingress = (lb_status.ingress if lb_status is not None else None) or []
    address = next((item.ip for item in lb_ingress if item.ip), None)
    if address is None:
        logger.info("load_balancer_pending", service=str(ObjectKey.from_object(svc)))
        return []
    ip = _ipv4(address)
    if ip is None:
        return []
    return [Target(ip=ip, port=p.port, network_id=network_id, tls=p.port == HTTPS_PORT) for p in ports]


def _endpoint_targets(kube: Any, svc: Any, ports: list[Any], network_id: int) -> list[Target]:
    key = ObjectKey.from_object(svc)
    endpoints = kube.get_endpoints(key.namespace, key.name)
    if endpoints is None:
        raise TargetResolutionError(f"could not fetch endpoints {key}")

    targets: list[Target] = []
    for port in ports:
        target_port = port.target_port
        fallback_number = port.port if target_port in (None, 0, "") else None
        if isinstance(target_port, int) and target_port:
            fallback_number = target_port

        for subset in endpoints.subsets or []:
            number = 0
            for subset_port in subset.ports or []:
                if (port.name and port.name == subset_port.name) or fallback_number == subset_port.port:
                    number = subset_port.port
                    break
            if not number:
                continue
            for address in subset.addresses or []:
                ip = _ipv4(address.ip)
                if ip is not None:
                    targets.append(Target(ip=ip, port=number, network_id=network_id, tls=port.port == HTTPS_PORT))
    return targets


def _ipv4(value: str) -> IPv4Address | None:
    try:
        parsed = ip_address(value)
    except ValueError:
        logger.warning("invalid_target_address", address=value)
        return None
    if not isinstance(parsed, IPv4Address):
        logger.debug("skipping_non_ipv4_target", address=value)
        return None
    return parsed
