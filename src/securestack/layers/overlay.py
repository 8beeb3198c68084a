"""Overlay mesh layer: ACL descriptor generation and network activation."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from ..config import defaults
from .base import LayerConfigurator, ensure_directory, write_file

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageContext

logger = logging.getLogger(__name__)

ACL_FILE_NAME = "acl.json"
ACL_TAG = "tag:tor-i2p"
ACL_PURPOSES: tuple[str, ...] = ("acl-primary", "acl-secondary")
GARLIC_ACL_PORTS: tuple[int, ...] = (
    defaults.I2P_I2CP_PORT,
    defaults.I2P_HTTP_PROXY_PORT,
    defaults.I2P_BOB_PORT,
)


def render_acl(ports: Mapping[str, int]) -> str:
    document = {
        "tagOwners": {ACL_TAG: ["*"]},
        "acl": [
            {
                "action": "accept",
                "users": ["*"],
                "ports": [str(ports[purpose]) for purpose in ACL_PURPOSES],
            },
            {
                "action": "accept",
                "users": ["*"],
                "ports": [str(port) for port in GARLIC_ACL_PORTS],
            },
        ],
    }
    return json.dumps(document, indent=2) + "\n"


class OverlayAclConfigurator(LayerConfigurator):
    """Write the overlay ACL descriptor with two randomized ports."""

    layer = "overlay"

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        context.host.require(defaults.EXECUTABLES["overlay"], self.layer)
        directory = Path(context.config.paths.overlay_dir)
        created = ensure_directory(context, directory)
        ports = context.allocator.claim(self.layer, ACL_PURPOSES)
        target = directory / ACL_FILE_NAME
        write_file(context, target, render_acl(ports), mode=0o644)
        logger.info("Overlay ACL written to %s", target)
        return {"acl": str(target), "ports": dict(ports), "created_dir": created}


class OverlayActivationConfigurator(LayerConfigurator):
    """Bring the overlay network up and advertise the configured routes."""

    layer = "overlay"

    def command(self, context: "StageContext") -> list[str]:
        routes = context.settings.get("advertise_routes") or defaults.DEFAULT_SETTINGS["advertise_routes"]
        argv = [defaults.EXECUTABLES["overlay"], "up", f"--advertise-routes={routes}"]
        if context.config.tailscale_auth_key:
            argv.append(f"--authkey={context.config.tailscale_auth_key}")
        else:
            logger.info("No overlay auth key configured; proceeding without it")
        return argv

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        host = context.host
        executable = defaults.EXECUTABLES["overlay"]
        host.require(executable, self.layer)
        argv = self.command(context)
        context.record_undo(
            "take overlay network down",
            lambda: host.run([executable, "down"]),
            key="overlay:down",
        )
        secrets = [context.config.tailscale_auth_key] if context.config.tailscale_auth_key else []
        host.run(argv, secrets=secrets)
        logger.info("Overlay network is up")
        return {"advertise_routes": argv[2].split("=", 1)[1], "authenticated": bool(secrets)}


__all__ = [
    "ACL_FILE_NAME",
    "ACL_PURPOSES",
    "OverlayAclConfigurator",
    "OverlayActivationConfigurator",
    "render_acl",
]
