"""Kubernetes resource watcher.

Streams Ingress, Service and Endpoints events across all namespaces or a
configured list of them and hands every event to a callback. Deciding which
Ingresses an event affects is left to the controller.
"""

from __future__ import annotations

import threading
from typing import Any, Callable

import structlog
from kubernetes import client, watch

logger = structlog.get_logger(__name__)

RESOURCE_INGRESSES = "ingresses"
RESOURCE_SERVICES = "services"
RESOURCE_ENDPOINTS = "endpoints"

# Maps resource type names to (API class, list method name)
_RESOURCE_TYPE_MAP: dict[str, tuple[str, str]] = {
    RESOURCE_INGRESSES: ("NetworkingV1Api", "list_ingress_for_all_namespaces"),
    RESOURCE_SERVICES: ("CoreV1Api", "list_service_for_all_namespaces"),
    RESOURCE_ENDPOINTS: ("CoreV1Api", "list_endpoints_for_all_namespaces"),
}

_RESOURCE_TYPE_NS_MAP: dict[str, tuple[str, str]] = {
    RESOURCE_INGRESSES: ("NetworkingV1Api", "list_namespaced_ingress"),
    RESOURCE_SERVICES: ("CoreV1Api", "list_namespaced_service"),
    RESOURCE_ENDPOINTS: ("CoreV1Api", "list_namespaced_endpoints"),
}

WATCH_TIMEOUT_SECONDS = 300
RECONNECT_DELAY_SECONDS = 5


class K8sWatcher:
    """Watches Kubernetes resources and forwards their events.

    Parameters
    ----------
    namespaces:
        Namespaces to watch. Empty list means watch all namespaces.
    resource_types:
        Resource types to watch (e.g. ``["ingresses", "services"]``).
    on_event:
        Callback invoked as ``on_event(resource_type, event_type, obj)`` for
        every ``ADDED``, ``MODIFIED`` and ``DELETED`` event.
    """

    def __init__(
        self,
        namespaces: list[str],
        resource_types: list[str],
        on_event: Callable[[str, str, Any], None],
    ) -> None:
        self._namespaces = namespaces
        self._resource_types = resource_types
        self._on_event = on_event
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start one watch thread per resource type and namespace."""
        for rt in self._resource_types:
            if rt not in _RESOURCE_TYPE_MAP:
                logger.warning("unknown_resource_type", resource_type=rt)
                continue
            for ns in self._namespaces or [None]:
                name = f"watch-{rt}" if ns is None else f"watch-{rt}-{ns}"
                t = threading.Thread(target=self._watch_loop, args=(rt, ns), daemon=True, name=name)
                self._threads.append(t)
                t.start()
            logger.info("watcher_started", resource_type=rt, namespaces=self._namespaces or ["all"])

    def stop(self) -> None:
        """Signal all watch threads to stop."""
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=5)

    def list_objects(self, resource_type: str) -> list[Any]:
        """One-shot list of every object of ``resource_type`` in the watched namespaces."""
        items: list[Any] = []
        if self._namespaces:
            api_class_name, method_name = _RESOURCE_TYPE_NS_MAP[resource_type]
            api_instance = _get_api_instance(api_class_name)
            for ns in self._namespaces:
                items.extend(getattr(api_instance, method_name)(namespace=ns).items)
        else:
            api_class_name, method_name = _RESOURCE_TYPE_MAP[resource_type]
            api_instance = _get_api_instance(api_class_name)
            items.extend(getattr(api_instance, method_name)().items)
        return items

    def _watch_loop(self, resource_type: str, namespace: str | None) -> None:
        """Run a watch stream for one resource type and namespace.

        Reconnects on stream timeout and errors until stopped.
        """
        w = watch.Watch()
        api_class_name, method_name = (
            _RESOURCE_TYPE_MAP[resource_type] if namespace is None else _RESOURCE_TYPE_NS_MAP[resource_type]
        )

        while not self._stop_event.is_set():
            try:
                api_instance = _get_api_instance(api_class_name)
                stream_args: dict[str, Any] = {"timeout_seconds": WATCH_TIMEOUT_SECONDS}
                if namespace is not None:
                    stream_args["namespace"] = namespace

                for event in w.stream(getattr(api_instance, method_name), **stream_args):
                    if self._stop_event.is_set():
                        break
                    self._handle_event(resource_type, event)

            except Exception:
                if not self._stop_event.is_set():
                    logger.exception("watch_error", resource_type=resource_type, namespace=namespace)
                    # Brief backoff before reconnecting
                    self._stop_event.wait(RECONNECT_DELAY_SECONDS)

        w.stop()

    def _handle_event(self, resource_type: str, event: dict[str, Any]) -> None:
        event_type = event.get("type", "")
        obj = event.get("object")
        if obj is None or getattr(obj, "metadata", None) is None:
            return
        if event_type not in ("ADDED", "MODIFIED", "DELETED"):
            logger.debug("watch_event_ignored", resource_type=resource_type, event_type=event_type)
            return
        try:
            self._on_event(resource_type, event_type, obj)
        except Exception:
            logger.exception("on_event_error", resource_type=resource_type, event_type=event_type)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_api_instance(api_class_name: str) -> Any:
    """Instantiate a Kubernetes API class by name."""
    cls = getattr(client, api_class_name)
    return cls()
