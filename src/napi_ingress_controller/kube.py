"""Kubernetes object store access used by the reconciler."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from napi_ingress_controller.models import ObjectKey

logger = structlog.get_logger(__name__)

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"


def load_k8s_config() -> None:
    """Load Kubernetes configuration (in-cluster preferred, fallback to kubeconfig)."""
    try:
        config.load_incluster_config()
        logger.info("k8s_config_loaded", source="in-cluster")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("k8s_config_loaded", source="kubeconfig")


class KubeClient:
    """Reads Ingresses, Services and Endpoints; writes finalizers, status and events.

    Parameters
    ----------
    component:
        Source component reported on emitted events.
    networking_api, core_api:
        Pre-built API instances; created from the loaded configuration if omitted.
    """

    def __init__(
        self,
        component: str,
        networking_api: client.NetworkingV1Api | None = None,
        core_api: client.CoreV1Api | None = None,
    ) -> None:
        self._component = component
        self._networking = networking_api or client.NetworkingV1Api()
        self._core = core_api or client.CoreV1Api()

    # -- reads ------------------------------------------------------------------

    def get_ingress(self, key: ObjectKey) -> client.V1Ingress | None:
        """Return the Ingress, or ``None`` if it does not exist."""
        try:
            return self._networking.read_namespaced_ingress(key.name, key.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get_service(self, namespace: str, name: str) -> client.V1Service | None:
        try:
            return self._core.read_namespaced_service(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def get_endpoints(self, namespace: str, name: str) -> client.V1Endpoints | None:
        try:
            return self._core.read_namespaced_endpoints(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    # -- writes -----------------------------------------------------------------

    def add_finalizer(self, ing: client.V1Ingress, finalizer: str) -> client.V1Ingress:
        finalizers = list(ing.metadata.finalizers or [])
        if finalizer in finalizers:
            return ing
        return self._patch_finalizers(ing, finalizers + [finalizer])

    def remove_finalizer(self, ing: client.V1Ingress, finalizer: str) -> client.V1Ingress:
        finalizers = list(ing.metadata.finalizers or [])
        if finalizer not in finalizers:
            return ing
        return self._patch_finalizers(ing, [f for f in finalizers if f != finalizer])

    def _patch_finalizers(self, ing: client.V1Ingress, finalizers: list[str]) -> client.V1Ingress:
        # resourceVersion makes the patch fail on a concurrent modification
        body = {"metadata": {"finalizers": finalizers, "resourceVersion": ing.metadata.resource_version}}
        return self._networking.patch_namespaced_ingress(ing.metadata.name, ing.metadata.namespace, body)

    def update_status_ip(self, ing: client.V1Ingress, ip: str) -> None:
        body = {"status": {"loadBalancer": {"ingress": [{"ip": ip}]}}}
        self._networking.patch_namespaced_ingress_status(ing.metadata.name, ing.metadata.namespace, body)

    def record_event(self, ing: client.V1Ingress, event_type: str, reason: str, message: str) -> None:
        """Attach an event to the Ingress. Failures are logged, never raised."""
        now = datetime.now(timezone.utc)
        meta = ing.metadata
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{meta.name}.", namespace=meta.namespace),
            involved_object=client.V1ObjectReference(
                api_version="networking.k8s.io/v1",
                kind="Ingress",
                name=meta.name,
                namespace=meta.namespace,
                uid=meta.uid,
                resource_version=meta.resource_version,
            ),
            reason=reason,
            message=message,
            type=event_type,
            source=client.V1EventSource(component=self._component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._core.create_namespaced_event(meta.namespace, event)
        except ApiException:
            logger.exception("event_record_failed", ingress=str(ObjectKey.from_object(ing)), reason=reason)
