"""Garlic-routing layer: router properties and service lifecycle."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from ..config import defaults
from ..errors import DependencyMissingError
from .base import LayerConfigurator, write_section

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageContext

logger = logging.getLogger(__name__)

ROUTER_CONFIG_NAME = "i2p.config"


def render_router_section(external_port: int) -> str:
    return "\n".join(
        [
            f"router.consolePort={defaults.I2P_CONSOLE_PORT}",
            f"router.myExternalPort={external_port}",
        ]
    )


class GarlicRoutingConfigurator(LayerConfigurator):
    layer = "garlic"

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        host = context.host
        config_dir = Path(context.config.paths.garlic_dir)
        if not host.is_dir(config_dir):
            raise DependencyMissingError(
                f"garlic layer configuration directory {config_dir} is missing; is i2p installed?"
            )
        host.require(defaults.EXECUTABLES[self.layer], self.layer)
        port = context.allocator.claim(self.layer, ("external",))["external"]

        target = config_dir / ROUTER_CONFIG_NAME
        write_section(context, target, render_router_section(port))

        service = defaults.SERVICES[self.layer]

        def _undo() -> None:
            host.service(service, "stop")
            host.service(service, "disable")

        context.record_undo(f"stop and disable {service}", _undo, key=f"service:{service}:stop")
        host.service(service, "enable")
        host.service(service, "start")
        logger.info("Garlic routing configured with external port %s", port)
        return {"config": str(target), "external_port": port}


__all__ = ["GarlicRoutingConfigurator", "render_router_section"]
