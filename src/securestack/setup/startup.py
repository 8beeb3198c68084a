"""Boot persistence: the systemd unit that re-runs provisioning at startup."""
from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path

from ..config import defaults
from ..utils.host import Host

logger = logging.getLogger(__name__)

UNIT_TEMPLATE = """\
[Unit]
Description=Secure Stack Setup
After=network-online.target
Wants=network-online.target

[Service]
Type=oneshot
ExecStart={exec_start}
RemainAfterExit=yes

[Install]
WantedBy=multi-user.target
"""


def default_exec_start() -> str:
    found = shutil.which("securestack")
    if found:
        return f"{found} provision"
    return f"{sys.executable} -m securestack provision"


def render_unit(exec_start: str | None = None) -> str:
    return UNIT_TEMPLATE.format(exec_start=exec_start or default_exec_start())


def install_unit(
    host: Host,
    *,
    exec_start: str | None = None,
    path: Path = defaults.STARTUP_UNIT,
) -> Path:
    """Write the startup unit, reload systemd and enable it."""

    host.write_text(path, render_unit(exec_start), mode=0o644)
    host.run(["systemctl", "daemon-reload"])
    host.service(path.name, "enable")
    logger.info("Startup unit %s installed and enabled", path)
    return path


__all__ = ["UNIT_TEMPLATE", "install_unit", "render_unit"]
