"""Exceptions raised while reconciling Ingresses."""

from __future__ import annotations

from typing import Any


class ControllerError(Exception):
    """Base class for every error raised by the controller."""


class IngressValidationError(ControllerError):
    """The Ingress has a shape this controller does not support."""


class TargetResolutionError(ControllerError):
    """The backend Service, its ports or its Endpoints could not be resolved."""


class InconsistentStateError(ControllerError):
    """NetworkAPI holds data the controller cannot work with."""


class NetworkAPIError(ControllerError):
    """Raised when the NetworkAPI returns an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(NetworkAPIError):
    """The requested NetworkAPI resource does not exist."""
