"""Tests for backend Service port matching and target resolution."""

from ipaddress import IPv4Address

import pytest

from k8s_factories import (
    LB_NETWORK_ID,
    POD_NETWORK_ID,
    FakeKube,
    make_endpoints,
    make_ingress,
    make_rule,
    make_service,
    make_settings,
    service_backend,
)
from napi_ingress_controller.config import instance_config
from napi_ingress_controller.errors import TargetResolutionError
from napi_ingress_controller.models import Target
from napi_ingress_controller.targets import resolve_targets, service_and_ports


@pytest.fixture()
def cfg():
    return instance_config({}, make_settings())


def _ports(ports) -> list[tuple[str, int]]:
    return [(p.name, p.port) for p in ports]


class TestServiceAndPorts:
    def test_load_balancer_https_port(self, cfg) -> None:
        svc = make_service(ports=[("https", 443)], service_type="LoadBalancer", lb_ip="10.1.1.1")
        kube = FakeKube(services=[svc])
        ing = make_ingress(rules=[make_rule(service_backend("example-service", number=443), path="/*")])

        found, ports = service_and_ports(kube, ing, "example-service")
        assert found is svc
        assert _ports(ports) == [("https", 443)]

        targets = resolve_targets(kube, found, ports, cfg)
        assert targets == [Target(ip=IPv4Address("10.1.1.1"), port=443, network_id=LB_NETWORK_ID, tls=True)]

    def test_match_by_name(self) -> None:
        kube = FakeKube(services=[make_service(ports=[("http", 80), ("admin", 9000)])])
        ing = make_ingress(default_backend=service_backend(port_name="admin"))
        _, ports = service_and_ports(kube, ing, "example-service")
        assert _ports(ports) == [("admin", 9000)]

    def test_single_port_default(self) -> None:
        kube = FakeKube(services=[make_service(ports=[("web", 8000)])])
        ing = make_ingress(default_backend=service_backend())
        _, ports = service_and_ports(kube, ing, "example-service")
        assert _ports(ports) == [("web", 8000)]

    def test_tls_adds_https_port(self) -> None:
        kube = FakeKube(services=[make_service(ports=[("http", 80), ("https", 443)])])
        ing = make_ingress(default_backend=service_backend(number=80), tls=True)
        _, ports = service_and_ports(kube, ing, "example-service")
        assert _ports(ports) == [("http", 80), ("https", 443)]

    def test_missing_service(self) -> None:
        ing = make_ingress(default_backend=service_backend(number=80))
        with pytest.raises(TargetResolutionError, match="could not fetch backend service default/example-service"):
            service_and_ports(FakeKube(), ing, "example-service")

    def test_unmatched_port(self) -> None:
        kube = FakeKube(services=[make_service(ports=[("http", 80)])])
        ing = make_ingress(default_backend=service_backend(number=8443))
        with pytest.raises(TargetResolutionError, match="no port matching"):
            service_and_ports(kube, ing, "example-service")

    def test_ambiguous_ports(self) -> None:
        kube = FakeKube(services=[make_service(ports=[("http", 80), ("admin", 9000)])])
        ing = make_ingress(default_backend=service_backend())
        with pytest.raises(TargetResolutionError, match="more than one port"):
            service_and_ports(kube, ing, "example-service")

    def test_external_name_rejected(self) -> None:
        kube = FakeKube(services=[make_service(service_type="ExternalName")])
        ing = make_ingress(default_backend=service_backend(number=80))
        with pytest.raises(TargetResolutionError, match="ExternalName"):
            service_and_ports(kube, ing, "example-service")


class TestResolveTargets:
    def test_endpoint_targets_by_port_name(self, cfg) -> None:
        svc = make_service(ports=[("http", 80)])
        kube = FakeKube(
            services=[svc],
            endpoints=[make_endpoints(ips=["172.16.0.1", "172.16.0.2"], ports=[("http", 8080)])],
        )
        targets = resolve_targets(kube, svc, svc.spec.ports, cfg)
        assert targets == [
            Target(ip=IPv4Address("172.16.0.1"), port=8080, network_id=POD_NETWORK_ID),
            Target(ip=IPv4Address("172.16.0.2"), port=8080, network_id=POD_NETWORK_ID),
        ]

    def test_endpoint_targets_by_numeric_target_port(self, cfg) -> None:
        svc = make_service(ports=[("", 80)], target_ports={"": 8080})
        kube = FakeKube(services=[svc], endpoints=[make_endpoints(ips=["172.16.0.1"], ports=[("", 8080)])])
        targets = resolve_targets(kube, svc, svc.spec.ports, cfg)
        assert [(str(t.ip), t.port) for t in targets] == [("172.16.0.1", 8080)]

    def test_https_service_port_marks_tls(self, cfg) -> None:
        svc = make_service(ports=[("https", 443)])
        kube = FakeKube(services=[svc], endpoints=[make_endpoints(ips=["172.16.0.1"], ports=[("https", 8443)])])
        targets = resolve_targets(kube, svc, svc.spec.ports, cfg)
        assert targets == [Target(ip=IPv4Address("172.16.0.1"), port=8443, network_id=POD_NETWORK_ID, tls=True)]

    def test_ipv6_addresses_skipped(self, cfg) -> None:
        svc = make_service(ports=[("http", 80)])
        kube = FakeKube(services=[svc], endpoints=[make_endpoints(ips=["fd00::1", "172.16.0.1"], ports=[("http", 80)])])
        targets = resolve_targets(kube, svc, svc.spec.ports, cfg)
        assert [str(t.ip) for t in targets] == ["172.16.0.1"]

    def test_empty_endpoints(self, cfg) -> None:
        svc = make_service(ports=[("http", 80)])
        kube = FakeKube(services=[svc], endpoints=[make_endpoints()])
        assert resolve_targets(kube, svc, svc.spec.ports, cfg) == []

    def test_missing_endpoints(self, cfg) -> None:
        svc = make_service(ports=[("http", 80)])
        with pytest.raises(TargetResolutionError, match="could not fetch endpoints default/example-service"):
            resolve_targets(FakeKube(services=[svc]), svc, svc.spec.ports, cfg)

    def test_pending_load_balancer(self, cfg) -> None:
        svc = make_service(ports=[("http", 80)], service_type="LoadBalancer")
        assert resolve_targets(FakeKube(services=[svc]), svc, svc.spec.ports, cfg) == []
