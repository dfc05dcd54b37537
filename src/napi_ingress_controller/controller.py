"""Main controller loop: ties the K8s watcher, the work queue, NetworkAPI and the
reconciler together.
"""

from __future__ import annotations

import os
import threading
from typing import Any

import structlog

from napi_ingress_controller.config import FINALIZER, ControllerSettings
from napi_ingress_controller.ingress import has_ingress_class
from napi_ingress_controller.k8s_watcher import (
    RESOURCE_ENDPOINTS,
    RESOURCE_INGRESSES,
    RESOURCE_SERVICES,
    K8sWatcher,
)
from napi_ingress_controller.kube import KubeClient, load_k8s_config
from napi_ingress_controller.models import ObjectKey
from napi_ingress_controller.networkapi import NetworkAPIClient
from napi_ingress_controller.reconciler import IngressReconciler
from napi_ingress_controller.service_index import ServiceIndex
from napi_ingress_controller.workqueue import ShutDown, WorkQueue

logger = structlog.get_logger(__name__)

COMPONENT = "napi-ingress-controller"

_WORKER_POLL_SECONDS = 1.0


class IngressController:
    """Top-level orchestrator.

    1. Loads K8s config and builds the Kubernetes and NetworkAPI clients.
    2. Enqueues every existing Ingress of the configured class.
    3. Starts the Ingress, Service and Endpoints watches.
    4. Runs reconcile workers until stopped.

    Parameters
    ----------
    settings:
        Fully-resolved controller configuration.
    """

    def __init__(self, settings: ControllerSettings) -> None:
        self._settings = settings
        self._stop_event = threading.Event()

        self._networkapi = NetworkAPIClient(
            base_url=settings.networkapi_url,
            username=settings.networkapi_username,
            password=settings.networkapi_password,
            timeout=settings.networkapi_timeout,
        )
        self._service_index = ServiceIndex()
        self._queue: WorkQueue[ObjectKey] = WorkQueue()
        self._reconciler: IngressReconciler | None = None
        self._watcher: K8sWatcher | None = None
        self._workers: list[threading.Thread] = []

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Initialise components and block until :meth:`stop` is called."""
        logger.info(
            "controller_starting",
            cluster_name=self._settings.cluster_name,
            ingress_class=self._settings.ingress_class_name,
            networkapi_url=self._settings.networkapi_url,
            namespaces=self._settings.watch_namespaces or ["all"],
            workers=self._settings.workers,
            reconcile_interval=self._settings.reconcile_interval,
        )

        # 1. Kubernetes config and clients
        load_k8s_config()
        kube = KubeClient(component=COMPONENT)
        self._reconciler = IngressReconciler(kube, self._networkapi, self._settings, self._service_index)

        # 2. Initial list
        self._watcher = K8sWatcher(
            namespaces=self._settings.watch_namespaces,
            resource_types=[RESOURCE_INGRESSES, RESOURCE_SERVICES, RESOURCE_ENDPOINTS],
            on_event=self.on_event,
        )
        ingresses = self._watcher.list_objects(RESOURCE_INGRESSES)
        for ing in ingresses:
            if self._is_managed(ing):
                self._queue.add(ObjectKey.from_object(ing))
        logger.info("initial_sync_enqueued", queued=len(self._queue), listed=len(ingresses))

        # 3. Watch streams (background threads)
        self._watcher.start()

        # 4. Workers
        for i in range(self._settings.workers):
            t = threading.Thread(target=self._worker_loop, daemon=True, name=f"worker-{i}")
            self._workers.append(t)
            t.start()

        self._stop_event.wait()

    def stop(self) -> None:
        """Gracefully shut down the controller. Safe to call more than once."""
        if self._queue.shutting_down:
            return
        logger.info("controller_stopping")
        self._stop_event.set()
        self._queue.shut_down()
        if self._watcher:
            self._watcher.stop()
        for t in self._workers:
            if t is not threading.current_thread():
                t.join(timeout=5)
        self._networkapi.close()
        logger.info("controller_stopped")

    # -- event dispatch ---------------------------------------------------------

    def on_event(self, resource_type: str, event_type: str, obj: Any) -> None:
        """Translate a watch event into queued Ingress keys."""
        key = ObjectKey.from_object(obj)
        if resource_type == RESOURCE_INGRESSES:
            if self._is_managed(obj):
                logger.debug("ingress_event", ingress=str(key), event_type=event_type)
                self._queue.add(key)
            return

        dependents = self._service_index.ingresses_for(key)
        if dependents:
            logger.debug(
                "backend_event",
                resource_type=resource_type,
                event_type=event_type,
                service=str(key),
                ingresses=[str(k) for k in dependents],
            )
        for ingress_key in dependents:
            self._queue.add(ingress_key)

    def _is_managed(self, ing: Any) -> bool:
        if has_ingress_class(ing, self._settings.ingress_class_name):
            return True
        # A deleted Ingress still carrying our finalizer needs cleanup whatever its class
        meta = ing.metadata
        return meta.deletion_timestamp is not None and FINALIZER in (meta.finalizers or [])

    # -- workers ----------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                key = self._queue.get(timeout=_WORKER_POLL_SECONDS)
            except ShutDown:
                return
            if key is None:
                continue
            try:
                self.process(key)
            finally:
                self._queue.done(key)

    def process(self, key: ObjectKey) -> None:
        """Run one reconciliation of ``key`` and schedule its next one."""
        if self._reconciler is None:
            raise RuntimeError("controller not started")
        try:
            result = self._reconciler.reconcile(key)
        except Exception:
            delay = self._queue.add_rate_limited(key)
            logger.exception("reconcile_error", ingress=str(key), retry_in=delay)
            return
        finally:
            if self._settings.debug_crash_after_reconcile:
                logger.warning("debug_crash_after_reconcile", ingress=str(key))
                os._exit(1)

        self._queue.forget(key)
        if result.requeue_after:
            self._queue.add_after(key, result.requeue_after)
