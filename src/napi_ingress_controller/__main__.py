"""``python -m napi_ingress_controller``: run the controller until SIGINT or SIGTERM."""

from __future__ import annotations

import signal
import sys

import structlog
from pydantic import ValidationError

from napi_ingress_controller.config import configure_logging, load_settings
from napi_ingress_controller.controller import IngressController


def main() -> None:
    try:
        settings = load_settings()
    except ValidationError as exc:
        # structlog is not configured yet
        sys.exit(f"invalid configuration: {exc}")

    configure_logging(settings)
    log = structlog.get_logger(__name__)
    controller = IngressController(settings)

    def _on_signal(signum: int, _frame: object) -> None:
        log.info("shutdown_requested", signal=signal.Signals(signum).name)
        controller.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _on_signal)

    log.info(
        "controller_starting",
        cluster=settings.cluster_name,
        ingress_class=settings.ingress_class_name,
        workers=settings.workers,
    )
    try:
        controller.start()
    except Exception:
        log.exception("controller_failed")
        controller.stop()
        sys.exit(1)

    controller.stop()
    log.info("controller_exited")


if __name__ == "__main__":
    main()
