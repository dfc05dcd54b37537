"""Reverse index from backend Services to the Ingresses that depend on them.

Written by the reconciler (one Ingress always depends on exactly one Service) and
read by the watch dispatch threads when a Service or its Endpoints change.
"""

from __future__ import annotations

import threading

from napi_ingress_controller.models import ObjectKey


class ServiceIndex:
    """Thread-safe bidirectional Ingress <-> Service mapping."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._service_by_ingress: dict[ObjectKey, ObjectKey] = {}
        self._ingresses_by_service: dict[ObjectKey, set[ObjectKey]] = {}

    def set(self, ingress: ObjectKey, service: ObjectKey) -> None:
        """Record that ``ingress`` currently routes to ``service``."""
        with self._lock:
            self._unlink(ingress)
            self._service_by_ingress[ingress] = service
            self._ingresses_by_service.setdefault(service, set()).add(ingress)

    def remove(self, ingress: ObjectKey) -> None:
        with self._lock:
            self._unlink(ingress)

    def ingresses_for(self, service: ObjectKey) -> list[ObjectKey]:
        """Ingresses depending on ``service``, sorted for stable dispatch order."""
        with self._lock:
            dependents = self._ingresses_by_service.get(service, set())
            return sorted(dependents, key=str)

    def service_for(self, ingress: ObjectKey) -> ObjectKey | None:
        with self._lock:
            return self._service_by_ingress.get(ingress)

    def __len__(self) -> int:
        with self._lock:
            return len(self._service_by_ingress)

    def _unlink(self, ingress: ObjectKey) -> None:
        previous = self._service_by_ingress.pop(ingress, None)
        if previous is None:
            return
        dependents = self._ingresses_by_service.get(previous)
        if dependents is not None:
            dependents.discard(ingress)
            if not dependents:
                del self._ingresses_by_service[previous]
