"""Onion-routing layer: torrc directives and the hidden service."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from ..config import defaults
from .base import LayerConfigurator, ensure_directory, write_section

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageContext

logger = logging.getLogger(__name__)

TORRC_NAME = "torrc"
NOTICE_LOG = "/var/log/tor/notices.log"


def render_torrc_section(hidden_port: int, hidden_dir: Path = defaults.TOR_HIDDEN_SERVICE_DIR) -> str:
    return "\n".join(
        [
            f"Log notice file {NOTICE_LOG}",
            f"ControlPort {defaults.TOR_CONTROL_PORT}",
            "CookieAuthentication 1",
            f"HiddenServiceDir {hidden_dir}/",
            f"HiddenServicePort {defaults.HIDDEN_SERVICE_VIRTUAL_PORT} 127.0.0.1:{hidden_port}",
        ]
    )


class OnionRoutingConfigurator(LayerConfigurator):
    layer = "onion"

    def __init__(self, hidden_service_dir: Path = defaults.TOR_HIDDEN_SERVICE_DIR) -> None:
        self.hidden_service_dir = Path(hidden_service_dir)

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        host = context.host
        service = defaults.SERVICES[self.layer]
        host.require(defaults.EXECUTABLES[self.layer], self.layer)
        config_dir = Path(context.config.paths.onion_dir)
        ensure_directory(context, config_dir)
        port = context.allocator.claim(self.layer, ("hidden-service",))["hidden-service"]

        ensure_directory(context, self.hidden_service_dir)
        owner = f"{defaults.TOR_USER}:{defaults.TOR_USER}"
        host.run(["chown", "-R", owner, str(self.hidden_service_dir)])

        # Registered before the torrc edit so rollback restarts after the
        # section is removed.
        context.record_undo(
            f"restart {service} with its previous configuration",
            lambda: host.service(service, "restart"),
            key=f"service:{service}:restart",
        )
        torrc = config_dir / TORRC_NAME
        write_section(context, torrc, render_torrc_section(port, self.hidden_service_dir))
        host.service(service, "restart")
        logger.info("Onion routing configured with hidden service port %s", port)
        return {"torrc": str(torrc), "hidden_service_port": port}


__all__ = ["OnionRoutingConfigurator", "render_torrc_section"]
