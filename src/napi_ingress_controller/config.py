"""Configuration management for the NetworkAPI Ingress Controller.

Settings are loaded from (highest priority wins):
1. Environment variables  (``NAPI_INGRESS_*``)
2. Kubernetes Secret mount (``/var/run/secrets/networkapi/password``)
3. Defaults

Per-Ingress overrides are read from annotations named
``kube-napi-ingress.tsuru.io/<fieldName>`` or ``kube-napi-ingress.tsuru.io.<fieldName>``
(see :func:`instance_config`).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Annotated, Any, Callable

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

_DEFAULT_PASSWORD_PATH = "/var/run/secrets/networkapi/password"

ANNOTATION_PREFIX = "kube-napi-ingress.tsuru.io"
"""Annotation prefix used on Ingresses to override cluster defaults."""

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"


def ann(key: str) -> str:
    """Return the fully-qualified annotation key for a short key name."""
    return f"{ANNOTATION_PREFIX}/{key}"


TAKE_OVER_ANNOTATION = ann("takeover-vip")
FINALIZER = ann("finalizer")


class ControllerSettings(BaseSettings):
    """All configurable knobs for the controller.

    Values can be set via environment variables with the ``NAPI_INGRESS_`` prefix,
    e.g. ``NAPI_INGRESS_CLUSTER_NAME``, ``NAPI_INGRESS_NETWORKAPI_URL``, etc.
    """

    # Cluster identity ----------------------------------------------------------
    cluster_name: str = Field(..., description="Cluster name, part of every NetworkAPI resource name.")
    ingress_class_name: str = Field(
        default="globo-networkapi",
        description="Only Ingresses of this class are reconciled.",
    )
    pod_network_id: int = Field(..., description="NetworkAPI IPv4 network holding pod addresses.")
    lb_network_id: int = Field(..., description="NetworkAPI IPv4 network holding LoadBalancer addresses.")

    # NetworkAPI connection -----------------------------------------------------
    networkapi_url: str = Field(..., description="Base URL of the NetworkAPI instance.")
    networkapi_username: str = Field(default="", description="NetworkAPI user.")
    networkapi_password: str = Field(
        default="",
        description="NetworkAPI password. If empty, the controller tries to read it from the secret file path.",
    )
    networkapi_password_file: str = Field(
        default=_DEFAULT_PASSWORD_PATH,
        description="Path to a file containing the NetworkAPI password (K8s Secret mount).",
    )
    networkapi_timeout: float = Field(default=30.0, description="HTTP timeout in seconds for NetworkAPI calls.")

    # Load balancer defaults ----------------------------------------------------
    vip_environment_id: int
    pool_environment_id: int
    cache_group_id: int
    persistence_id: int
    timeout_id: int
    traffic_return_id: int
    l4_protocol_id: int
    l7_protocol_id: int
    l7_rule_id: int
    lb_method: str = "round-robin"

    # Equipment -----------------------------------------------------------------
    equipment_type_id: int
    equipment_model_id: int
    equipment_group_id: int
    equipment_environment_id: int

    # Kubernetes watching -------------------------------------------------------
    watch_namespaces: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description=(
            "Namespaces to watch. Empty list means watch all namespaces. "
            "Comma-separated string also accepted via env var."
        ),
    )

    # Reconciliation ------------------------------------------------------------
    reconcile_interval: int = Field(
        default=300,
        ge=60,
        description="Seconds before an Ingress is reconciled again after a successful pass.",
    )
    workers: int = Field(default=2, ge=1, description="Number of concurrent reconcile workers.")
    debug_crash_after_reconcile: bool = Field(
        default=False,
        description="Exit the process after the first reconciliation (restart testing only).",
    )

    # Logging -------------------------------------------------------------------
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR).",
    )
    log_format: str = Field(
        default="json",
        description="Log format: 'json' (structured) or 'console' (human-readable).",
    )

    # ---- Validators -----------------------------------------------------------

    @field_validator("watch_namespaces", mode="before")
    @classmethod
    def _parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(",") if ns.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        return v.upper()

    # ---- Post-init: resolve password from file if needed ----------------------

    def model_post_init(self, _context: object) -> None:
        """If ``networkapi_password`` is empty, attempt to read it from the secret file."""
        if not self.networkapi_password:
            self.networkapi_password = self._read_password_file()

    def _read_password_file(self) -> str:
        path = Path(self.networkapi_password_file)
        if path.is_file():
            return path.read_text().strip()
        return ""

    # ---- Pydantic-settings config ---------------------------------------------

    model_config = {
        "env_prefix": "NAPI_INGRESS_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


def load_settings() -> ControllerSettings:
    """Load and validate controller settings from the environment.

    Returns
    -------
    ControllerSettings
        Fully-resolved configuration.

    Raises
    ------
    pydantic.ValidationError
        If required settings are missing or invalid.
    """
    return ControllerSettings()  # type: ignore[call-arg]


# Per-request chatter of the client libraries, shown only at DEBUG
_CLIENT_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore")


def configure_logging(settings: ControllerSettings) -> None:
    """Route structlog through stdlib logging at ``settings.log_level``.

    ``settings.log_format`` selects JSON lines (``json``) or the coloured
    console renderer (anything else).
    """
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(level if level == logging.DEBUG else logging.WARNING)

    renderer: structlog.types.Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Per-Ingress configuration
# ---------------------------------------------------------------------------


class InstanceConfig(BaseModel):
    """Load balancer parameters for a single Ingress.

    Cluster-wide defaults come from :class:`ControllerSettings`; any field listed
    in ``_ANNOTATION_FIELDS`` can be overridden per Ingress.
    """

    vip_environment_id: int
    pool_environment_id: int
    cache_group_id: int
    persistence_id: int
    timeout_id: int
    traffic_return_id: int
    l4_protocol_id: int
    l7_protocol_id: int
    l7_rule_id: int
    lb_method: str

    settings: ControllerSettings

    model_config = {"frozen": True}


# Annotation suffix (lower-cased) -> (InstanceConfig field, parser)
_ANNOTATION_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "vipenvironmentid": ("vip_environment_id", int),
    "poolenvironmentid": ("pool_environment_id", int),
    "cachegroupid": ("cache_group_id", int),
    "persistenceid": ("persistence_id", int),
    "timeoutid": ("timeout_id", int),
    "trafficreturnid": ("traffic_return_id", int),
    "l4protocolid": ("l4_protocol_id", int),
    "l7protocolid": ("l7_protocol_id", int),
    "l7ruleid": ("l7_rule_id", int),
    "lbmethod": ("lb_method", str.strip),
}


def _annotation_suffix(key: str) -> str | None:
    """Field part of ``<prefix>/<field>`` or ``<prefix>.<field>``."""
    for sep in ("/", "."):
        head = ANNOTATION_PREFIX + sep
        if key.startswith(head):
            return key[len(head):]
    return None


def instance_config(annotations: dict[str, str] | None, settings: ControllerSettings) -> InstanceConfig:
    """Resolve the :class:`InstanceConfig` of an Ingress from its annotations."""
    values: dict[str, Any] = {field: getattr(settings, field) for field, _ in _ANNOTATION_FIELDS.values()}

    for key, raw in (annotations or {}).items():
        suffix = _annotation_suffix(key)
        if suffix is None:
            continue
        entry = _ANNOTATION_FIELDS.get(suffix.lower())
        if entry is None:
            continue
        field, parse = entry
        try:
            values[field] = parse(raw)
        except ValueError:
            logger.warning("invalid_config_annotation", key=key, value=raw)

    return InstanceConfig(settings=settings, **values)
