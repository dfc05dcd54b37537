"""Tests for the NetworkAPI data models."""

from ipaddress import IPv4Address

import pytest
from pydantic import ValidationError

from napi_ingress_controller.models import IP, VIP, ObjectKey, Pool, VIPPool, VIPPort


class TestIP:
    def test_octets_round_trip(self) -> None:
        ip = IP.from_address("100.10.10.10", id=8000)
        assert (ip.oct1, ip.oct2, ip.oct3, ip.oct4) == (100, 10, 10, 10)
        assert ip.to_address() == IPv4Address("100.10.10.10")

    def test_octet_range(self) -> None:
        with pytest.raises(ValidationError):
            IP(oct1=256)

    def test_network_reference_forms(self) -> None:
        assert IP.model_validate({"networkipv4": {"id": 4, "name": "net"}}).network_ipv4_id == 4
        assert IP.model_validate({"networkipv4": 4}).network_ipv4_id == 4
        assert IP(network_ipv4_id=4).network_ipv4_id == 4


class TestReferences:
    def test_nested_and_flat_ids_compare_equal(self) -> None:
        nested = VIP.model_validate(
            {
                "name": "vip-1",
                "ipv4": {"id": 8000},
                "ports": [{"port": 80, "pools": [{"server_pool": {"id": 111}, "l7_rule": {"id": 18}}]}],
            }
        )
        flat = VIP(name="vip-1", ipv4=8000, ports=[VIPPort(port=80, pools=[VIPPool(server_pool=111, l7_rule=18)])])
        assert nested == flat

    def test_unknown_fields_ignored(self) -> None:
        pool = Pool.model_validate({"identifier": "pool-1", "dscp": 12, "groups_permissions": []})
        assert pool == Pool(identifier="pool-1")


class TestPayload:
    def test_excludes_unset_optionals(self) -> None:
        payload = VIP(name="vip-1", ipv4=8000).to_api_payload()
        assert "id" not in payload
        assert "ipv6" not in payload
        assert payload["ipv4"] == 8000

    def test_uses_api_aliases(self) -> None:
        payload = IP.from_address("10.0.0.5", network_ipv4_id=1).to_api_payload()
        assert payload["networkipv4"] == 1
        assert "network_ipv4_id" not in payload


class TestObjectKey:
    def test_str(self) -> None:
        assert str(ObjectKey("default", "ingress-1")) == "default/ingress-1"

    def test_hashable(self) -> None:
        assert {ObjectKey("a", "b"), ObjectKey("a", "b")} == {ObjectKey("a", "b")}
