"""Tests for controller settings and per-Ingress configuration."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import structlog
from pydantic import ValidationError

from k8s_factories import make_settings
from napi_ingress_controller.config import (
    FINALIZER,
    TAKE_OVER_ANNOTATION,
    ControllerSettings,
    InstanceConfig,
    configure_logging,
    instance_config,
    load_settings,
)

REQUIRED_ENV = {
    "NAPI_INGRESS_CLUSTER_NAME": "prod",
    "NAPI_INGRESS_POD_NETWORK_ID": "1",
    "NAPI_INGRESS_LB_NETWORK_ID": "2",
    "NAPI_INGRESS_NETWORKAPI_URL": "https://networkapi.example.com",
    "NAPI_INGRESS_NETWORKAPI_PASSWORD_FILE": "/nonexistent/password",
    "NAPI_INGRESS_VIP_ENVIRONMENT_ID": "8",
    "NAPI_INGRESS_POOL_ENVIRONMENT_ID": "7",
    "NAPI_INGRESS_CACHE_GROUP_ID": "6",
    "NAPI_INGRESS_PERSISTENCE_ID": "5",
    "NAPI_INGRESS_TIMEOUT_ID": "4",
    "NAPI_INGRESS_TRAFFIC_RETURN_ID": "3",
    "NAPI_INGRESS_L4_PROTOCOL_ID": "2",
    "NAPI_INGRESS_L7_PROTOCOL_ID": "1",
    "NAPI_INGRESS_L7_RULE_ID": "9",
    "NAPI_INGRESS_EQUIPMENT_TYPE_ID": "10",
    "NAPI_INGRESS_EQUIPMENT_MODEL_ID": "11",
    "NAPI_INGRESS_EQUIPMENT_GROUP_ID": "12",
    "NAPI_INGRESS_EQUIPMENT_ENVIRONMENT_ID": "13",
}


@pytest.fixture()
def env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for key, value in REQUIRED_ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


class TestControllerSettings:
    def test_load_from_env(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("NAPI_INGRESS_WATCH_NAMESPACES", "default, apps,")
        env.setenv("NAPI_INGRESS_LOG_LEVEL", "debug")
        settings = load_settings()
        assert settings.cluster_name == "prod"
        assert settings.vip_environment_id == 8
        assert settings.ingress_class_name == "globo-networkapi"
        assert settings.watch_namespaces == ["default", "apps"]
        assert settings.log_level == "DEBUG"
        assert settings.reconcile_interval == 300

    def test_missing_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for key in REQUIRED_ENV:
            monkeypatch.delenv(key, raising=False)
        with pytest.raises(ValidationError):
            ControllerSettings()  # type: ignore[call-arg]

    def test_reconcile_interval_lower_bound(self) -> None:
        with pytest.raises(ValidationError):
            make_settings(reconcile_interval=10)

    def test_password_from_file(self, tmp_path) -> None:
        secret = tmp_path / "password"
        secret.write_text("s3cret\n")
        settings = make_settings(networkapi_password_file=str(secret))
        assert settings.networkapi_password == "s3cret"

    def test_explicit_password_wins(self, tmp_path) -> None:
        secret = tmp_path / "password"
        secret.write_text("from-file")
        settings = make_settings(networkapi_password="explicit", networkapi_password_file=str(secret))
        assert settings.networkapi_password == "explicit"


class TestInstanceConfig:
    def test_annotations_override_case_insensitively(self) -> None:
        settings = make_settings(vip_environment_id=8, pool_environment_id=7, cache_group_id=6)
        cfg = instance_config(
            {
                "kube-napi-ingress.tsuru.io/vipEnvironmentID": "99",
                "kube-napi-ingress.tsuru.io/POOLEnvironmentID": "101",
            },
            settings,
        )
        assert cfg == InstanceConfig(
            vip_environment_id=99,
            pool_environment_id=101,
            cache_group_id=6,
            persistence_id=settings.persistence_id,
            timeout_id=settings.timeout_id,
            traffic_return_id=settings.traffic_return_id,
            l4_protocol_id=settings.l4_protocol_id,
            l7_protocol_id=settings.l7_protocol_id,
            l7_rule_id=settings.l7_rule_id,
            lb_method=settings.lb_method,
            settings=settings,
        )

    def test_dotted_annotation_form(self) -> None:
        settings = make_settings(vip_environment_id=8, cache_group_id=6)
        cfg = instance_config(
            {
                "kube-napi-ingress.tsuru.io.vipEnvironmentID": "99",
                "kube-napi-ingress.tsuru.io.CACHEGROUPID": "12",
            },
            settings,
        )
        assert cfg.vip_environment_id == 99
        assert cfg.cache_group_id == 12

    def test_prefix_must_be_followed_by_separator(self) -> None:
        settings = make_settings(vip_environment_id=8)
        cfg = instance_config({"kube-napi-ingress.tsuru.iovipEnvironmentID": "99"}, settings)
        assert cfg.vip_environment_id == 8

    def test_defaults_without_annotations(self) -> None:
        settings = make_settings()
        cfg = instance_config(None, settings)
        assert cfg.vip_environment_id == settings.vip_environment_id
        assert cfg.lb_method == "round-robin"

    def test_invalid_value_keeps_default(self) -> None:
        settings = make_settings(l7_rule_id=18)
        cfg = instance_config({"kube-napi-ingress.tsuru.io/l7RuleID": "not-a-number"}, settings)
        assert cfg.l7_rule_id == 18

    def test_unrelated_annotations_ignored(self) -> None:
        settings = make_settings()
        cfg = instance_config({"example.com/vipEnvironmentID": "99", TAKE_OVER_ANNOTATION: "vip"}, settings)
        assert cfg.vip_environment_id == settings.vip_environment_id

    def test_lb_method(self) -> None:
        cfg = instance_config({"kube-napi-ingress.tsuru.io/lbMethod": " least-conn "}, make_settings())
        assert cfg.lb_method == "least-conn"


def test_annotation_keys() -> None:
    assert TAKE_OVER_ANNOTATION == "kube-napi-ingress.tsuru.io/takeover-vip"
    assert FINALIZER == "kube-napi-ingress.tsuru.io/finalizer"


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_levels(self):
        yield
        for name in ("kubernetes", "urllib3", "httpx", "httpcore"):
            logging.getLogger(name).setLevel(logging.NOTSET)

    @patch("napi_ingress_controller.config.structlog.configure")
    def test_client_loggers_quiet_unless_debug(self, _configure: MagicMock) -> None:
        configure_logging(make_settings(log_level="info"))
        assert logging.getLogger("httpx").level == logging.WARNING

        configure_logging(make_settings(log_level="debug"))
        assert logging.getLogger("httpx").level == logging.DEBUG

    @patch("napi_ingress_controller.config.structlog.configure")
    def test_renderer_follows_log_format(self, mock_configure: MagicMock) -> None:
        configure_logging(make_settings(log_format="json"))
        assert isinstance(mock_configure.call_args.kwargs["processors"][-1], structlog.processors.JSONRenderer)

        configure_logging(make_settings(log_format="console"))
        assert isinstance(mock_configure.call_args.kwargs["processors"][-1], structlog.dev.ConsoleRenderer)
