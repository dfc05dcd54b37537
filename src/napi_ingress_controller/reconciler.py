"""Ingress reconciler: converges NetworkAPI equipment, IPs, pools and the VIP of
one Ingress towards the state derived from its backend Service.

Each pass re-derives the desired state from scratch and only issues the
create/update calls needed to close the gap, so a pass interrupted at any point
is completed by the next one.
"""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import Any

import structlog

from napi_ingress_controller.config import (
    FINALIZER,
    TAKE_OVER_ANNOTATION,
    ControllerSettings,
    InstanceConfig,
    instance_config,
)
from napi_ingress_controller.errors import InconsistentStateError, NotFoundError
from napi_ingress_controller.ingress import backend_service_name, validate_ingress
from napi_ingress_controller.kube import EVENT_NORMAL, EVENT_WARNING
from napi_ingress_controller.models import IP, VIP, ObjectKey, Pool, PoolMember, Target
from napi_ingress_controller.networkapi import NetworkAPI
from napi_ingress_controller.resources import (
    SCHEME_HTTP,
    SCHEME_HTTPS,
    equipment_name,
    fill_pool_update,
    fill_vip_update,
    new_equipment,
    new_pool,
    new_pool_member,
    new_real_ip,
    new_vip,
    new_vip_ports,
    pool_name,
    same_pool,
    vip_name,
)
from napi_ingress_controller.service_index import ServiceIndex
from napi_ingress_controller.targets import resolve_targets, service_and_ports

logger = structlog.get_logger(__name__)

REASON_RECONCILING = "Reconciling"
REASON_RECONCILED = "Reconciled"
REASON_FAILED = "ReconcileFailed"


@dataclass
class ReconcileResult:
    """Outcome of a successful pass. ``requeue_after`` is in seconds."""

    requeue_after: float | None = None


class IngressReconciler:
    """Reconciles a single Ingress per call.

    Safe to call concurrently for different keys; callers must not run two
    passes for the same key at once.

    Parameters
    ----------
    kube:
        Kubernetes object store (see :class:`napi_ingress_controller.kube.KubeClient`).
    networkapi:
        NetworkAPI implementation.
    settings:
        Cluster-wide configuration.
    service_index:
        Reverse index updated with the Service each Ingress depends on.
    """

    def __init__(
        self,
        kube: Any,
        networkapi: NetworkAPI,
        settings: ControllerSettings,
        service_index: ServiceIndex | None = None,
    ) -> None:
        self._kube = kube
        self._napi = networkapi
        self._settings = settings
        self._index = service_index if service_index is not None else ServiceIndex()

    @property
    def service_index(self) -> ServiceIndex:
        return self._index

    # -- state machine ----------------------------------------------------------

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        log = logger.bind(ingress=str(key))

        ing = self._kube.get_ingress(key)
        if ing is None:
            log.info("ingress_not_found")
            try:
                self._cleanup(key)
            except Exception:
                # Nothing left to retry against once the object is gone
                log.exception("orphan_cleanup_failed")
            self._index.remove(key)
            return ReconcileResult()

        if ing.metadata.deletion_timestamp is not None:
            if FINALIZER in (ing.metadata.finalizers or []):
                take_over = _take_over_vip(ing)
                if take_over:
                    log.info("cleanup_skipped_for_taken_over_vip", vip=take_over)
                else:
                    self._cleanup(key)
                self._kube.remove_finalizer(ing, FINALIZER)
                log.info("finalizer_removed")
            self._index.remove(key)
            return ReconcileResult()

        if FINALIZER not in (ing.metadata.finalizers or []):
            # Persisted before any NetworkAPI mutation so cleanup always runs
            ing = self._kube.add_finalizer(ing, FINALIZER)
            log.info("finalizer_added")

        self._kube.record_event(ing, EVENT_NORMAL, REASON_RECONCILING, "reconciling")
        try:
            self._reconcile_ingress(key, ing)
        except Exception as exc:
            log.error("ingress_reconcile_failed", error=str(exc))
            self._kube.record_event(ing, EVENT_WARNING, REASON_FAILED, f"failed to reconcile: {exc}")
            raise

        self._kube.record_event(ing, EVENT_NORMAL, REASON_RECONCILED, "reconciled")
        log.info("ingress_reconciled")
        return ReconcileResult(requeue_after=self._settings.reconcile_interval)

    def _reconcile_ingress(self, key: ObjectKey, ing: Any) -> None:
        validate_ingress(ing, self._settings.ingress_class_name)
        cfg = instance_config(ing.metadata.annotations, self._settings)

        service_name = backend_service_name(ing)
        self._index.set(key, ObjectKey(key.namespace, service_name))
        svc, ports = service_and_ports(self._kube, ing, service_name)
        targets = resolve_targets(self._kube, svc, ports, cfg)
        logger.debug("targets_resolved", ingress=str(key), targets=[f"{t.ip}:{t.port}" for t in targets])

        pools = self._ensure_pools(key, cfg, targets)

        take_over = _take_over_vip(ing)
        if take_over:
            address = self._ensure_taken_over_vip(take_over, cfg, pools)
        else:
            address = self._ensure_vip(key, cfg, pools)

        if _status_ip(ing) != str(address):
            self._kube.update_status_ip(ing, str(address))
            logger.info("ingress_status_updated", ingress=str(key), ip=str(address))

    # -- reals and pools --------------------------------------------------------

    def _ensure_pools(self, key: ObjectKey, cfg: InstanceConfig, targets: list[Target]) -> dict[str, Pool]:
        members: dict[str, list[PoolMember]] = {SCHEME_HTTP: [], SCHEME_HTTPS: []}
        reals: dict[tuple[IPv4Address, int], IP] = {}
        for target in targets:
            real_key = (target.ip, target.network_id)
            if real_key not in reals:
                reals[real_key] = self._ensure_real(target, cfg)
            scheme = SCHEME_HTTPS if target.tls else SCHEME_HTTP
            members[scheme].append(new_pool_member(target, reals[real_key]))

        # Without targets yet, an empty HTTP pool keeps the VIP well-formed
        schemes = [scheme for scheme in (SCHEME_HTTP, SCHEME_HTTPS) if members[scheme]] or [SCHEME_HTTP]
        pools: dict[str, Pool] = {}
        for scheme in schemes:
            name = pool_name(self._settings.cluster_name, key, scheme)
            pools[scheme] = self._ensure_pool(new_pool(name, scheme, cfg, members[scheme]))
        return pools

    def _ensure_real(self, target: Target, cfg: InstanceConfig) -> IP:
        name = equipment_name(self._settings.cluster_name, target.ip)
        try:
            equipment = self._napi.get_equipment(name)
        except NotFoundError:
            equipment = self._napi.create_equipment(new_equipment(name, cfg))
            logger.info("equipment_created", equipment=name, id=equipment.id)

        try:
            return self._napi.get_ip_by_net_ip(target.ip, target.network_id)
        except NotFoundError:
            ip = self._napi.create_ip(new_real_ip(target, name, equipment))
            logger.info("ip_created", ip=str(target.ip), network=target.network_id, id=ip.id)
            return ip

    def _ensure_pool(self, desired: Pool) -> Pool:
        try:
            current = self._napi.get_pool(desired.identifier)
        except NotFoundError:
            created = self._napi.create_pool(desired)
            logger.info("pool_created", pool=desired.identifier, id=created.id)
            return created

        desired = fill_pool_update(desired, current)
        if same_pool(desired, current):
            logger.debug("pool_up_to_date", pool=desired.identifier)
            return current
        updated = self._napi.update_pool(desired)
        logger.info("pool_updated", pool=desired.identifier, id=updated.id)
        return updated

    # -- VIP --------------------------------------------------------------------

    def _ensure_vip(self, key: ObjectKey, cfg: InstanceConfig, pools: dict[str, Pool]) -> IPv4Address:
        name = vip_name(self._settings.cluster_name, key)
        try:
            vip_ip = self._napi.get_ip_by_name(name)
        except NotFoundError:
            vip_ip = self._napi.create_vip_ipv4(name, cfg.vip_environment_id)
            logger.info("vip_ip_allocated", vip=name, ip=str(vip_ip.to_address()))

        desired = new_vip(name, key, cfg, vip_ip.id, pools)
        try:
            current = self._napi.get_vip(name)
        except NotFoundError:
            vip = self._napi.create_vip(desired)
            logger.info("vip_created", vip=name, id=vip.id)
        else:
            vip = self._converge_vip(desired, current)

        self._deploy_if_needed(vip)
        return vip_ip.to_address()

    def _ensure_taken_over_vip(self, name: str, cfg: InstanceConfig, pools: dict[str, Pool]) -> IPv4Address:
        current = self._napi.get_vip(name)
        if current.ipv4 is None:
            raise InconsistentStateError(f"VIP {name} has no IPv4 assigned")

        # Identity and options stay as found, only ports are redirected
        desired = current.model_copy(update={"ports": new_vip_ports(pools, cfg)})
        vip = self._converge_vip(desired, current)
        self._deploy_if_needed(vip)
        return self._napi.get_ip_by_id(current.ipv4).to_address()

    def _converge_vip(self, desired: VIP, current: VIP) -> VIP:
        desired = fill_vip_update(desired, current)
        if desired == current:
            logger.debug("vip_up_to_date", vip=desired.name)
            return current
        updated = self._napi.update_vip(desired)
        logger.info("vip_updated", vip=desired.name, id=updated.id)
        return updated

    def _deploy_if_needed(self, vip: VIP) -> None:
        if vip.created:
            return
        self._napi.deploy_vip(vip.id)
        logger.info("vip_deployed", vip=vip.name, id=vip.id)

    # -- cleanup ----------------------------------------------------------------

    def _cleanup(self, key: ObjectKey) -> None:
        """Delete the VIP, then its IP, then the pools. Missing records are skipped."""
        cluster = self._settings.cluster_name
        name = vip_name(cluster, key)

        try:
            vip = self._napi.get_vip(name)
            self._napi.delete_vip(vip)
        except NotFoundError:
            logger.debug("vip_already_absent", vip=name)
        else:
            logger.info("vip_deleted", vip=name, id=vip.id)

        try:
            vip_ip = self._napi.get_ip_by_name(name)
            self._napi.delete_ip(vip_ip.id)
        except NotFoundError:
            logger.debug("vip_ip_already_absent", vip=name)
        else:
            logger.info("vip_ip_deleted", vip=name, id=vip_ip.id)

        for scheme in (SCHEME_HTTP, SCHEME_HTTPS):
            identifier = pool_name(cluster, key, scheme)
            try:
                pool = self._napi.get_pool(identifier)
                self._napi.delete_pool(pool.id)
            except NotFoundError:
                logger.debug("pool_already_absent", pool=identifier)
                continue
            logger.info("pool_deleted", pool=identifier, id=pool.id)


def _take_over_vip(ing: Any) -> str:
    annotations = ing.metadata.annotations or {}
    return annotations.get(TAKE_OVER_ANNOTATION, "").strip()


def _status_ip(ing: Any) -> str | None:
    status = ing.status
    lb = status.load_balancer if status is not None else None
    items = lb.ingress if lb is not None else None
    return items[0].ip if items else None
