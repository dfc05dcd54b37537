"""Ingress validation and class matching.

Only a narrow Ingress shape can be mapped onto a single NetworkAPI VIP: one
backend Service, reached either through ``defaultBackend`` or through rules
that all point at that same Service with at most one catch-all path each.
"""

from __future__ import annotations

from typing import Any

from kubernetes.client import V1IngressServiceBackend

from napi_ingress_controller.config import INGRESS_CLASS_ANNOTATION
from napi_ingress_controller.errors import IngressValidationError

ERR_NIL = "Ingress cannot be None"
ERR_CLASS = "Invalid ingress class detected, predicate failed"
ERR_NO_BACKEND = "Ingress must have either default backend or one rule"
ERR_PATHS = "Ingress can have only one path"
ERR_PATH_VALUE = "Ingress path must be unset, / or /*"
ERR_PATH_SERVICE = "Ingress path must have a Service"
ERR_DEFAULT_SERVICE = "Ingress default backend must have a Service"
ERR_SERVICE_NAME = "Service backend must have a name"
ERR_DIFFERENT_SERVICES = "Ingress cannot have different Services by rule"
ERR_BACKEND_AND_RULES = "Ingress can't have a DefaultBackend and Rules at the same time"

_ALLOWED_PATHS = ("", "/", "/*")


def ingress_class(ing: Any) -> str:
    """Class of an Ingress: ``spec.ingressClassName`` first, then the legacy annotation."""
    spec = ing.spec
    if spec is not None and spec.ingress_class_name:
        return spec.ingress_class_name
    annotations = (ing.metadata.annotations if ing.metadata else None) or {}
    return annotations.get(INGRESS_CLASS_ANNOTATION, "")


def has_ingress_class(ing: Any, class_name: str) -> bool:
    return ingress_class(ing) == class_name


def service_backends(ing: Any) -> list[V1IngressServiceBackend]:
    """All Service backends referenced by the rules and the default backend."""
    backends: list[V1IngressServiceBackend] = []
    spec = ing.spec
    for rule in spec.rules or []:
        if rule.http is None:
            continue
        for path in rule.http.paths or []:
            if path.backend is not None and path.backend.service is not None:
                backends.append(path.backend.service)
    if spec.default_backend is not None and spec.default_backend.service is not None:
        backends.append(spec.default_backend.service)
    return backends


def validate_ingress(ing: Any, class_name: str) -> None:
    """Raise :class:`IngressValidationError` unless ``ing`` can be reconciled.

    Has no side effects; succeeds by returning ``None``.
    """
    if ing is None:
        raise IngressValidationError(ERR_NIL)
    if not has_ingress_class(ing, class_name):
        raise IngressValidationError(ERR_CLASS)

    spec = ing.spec
    rules = (spec.rules or []) if spec is not None else []
    default_backend = spec.default_backend if spec is not None else None
    if default_backend is None and not rules:
        raise IngressValidationError(ERR_NO_BACKEND)

    names: set[str] = set()
    for rule in rules:
        paths = (rule.http.paths or []) if rule.http is not None else []
        if len(paths) > 1:
            raise IngressValidationError(ERR_PATHS)
        for path in paths:
            if (path.path or "") not in _ALLOWED_PATHS:
                raise IngressValidationError(ERR_PATH_VALUE)
            if path.backend is None or path.backend.service is None:
                raise IngressValidationError(ERR_PATH_SERVICE)
            if not path.backend.service.name:
                raise IngressValidationError(ERR_SERVICE_NAME)
            names.add(path.backend.service.name)

    if default_backend is not None:
        if default_backend.service is None:
            raise IngressValidationError(ERR_DEFAULT_SERVICE)
        if not default_backend.service.name:
            raise IngressValidationError(ERR_SERVICE_NAME)
        names.add(default_backend.service.name)

    if len(names) > 1:
        raise IngressValidationError(ERR_DIFFERENT_SERVICES)
    if not names:
        # Only rules without HTTP paths (e.g. TLS-only hosts)
        raise IngressValidationError(ERR_NO_BACKEND)
    if default_backend is not None and rules:
        raise IngressValidationError(ERR_BACKEND_AND_RULES)


def backend_service_name(ing: Any) -> str:
    """Name of the single backend Service of a validated Ingress."""
    backends = service_backends(ing)
    if not backends:
        raise IngressValidationError(ERR_NO_BACKEND)
    return backends[0].name
