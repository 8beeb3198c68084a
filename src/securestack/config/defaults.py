"""Default locations, fixed ports and service names for the managed layers."""
from __future__ import annotations

from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = ".securestacksetup_config.json"
CONFIG_ENV_VAR = "SECURESTACK_CONFIG"

TAILSCALE_CONFIG_DIR = Path("/etc/tailscale")
TOR_CONFIG_DIR = Path("/etc/tor")
I2P_CONFIG_DIR = Path("/etc/i2p")
UFW_RULES_FILE = Path("/etc/ufw/user.rules")

TOR_HIDDEN_SERVICE_DIR = Path("/var/lib/tor/hidden_service")
TOR_USER = "debian-tor"

OVERLAY_INTERFACE = "tailscale0"

# Ports the stack's own services always listen on.
TOR_SOCKS_PORT = 9050
TOR_CONTROL_PORT = 9051
I2P_CONSOLE_PORT = 7657
I2P_I2CP_PORT = 7654
I2P_HTTP_PROXY_PORT = 4444
I2P_HTTPS_PROXY_PORT = 4445
I2P_BOB_PORT = 2827
I2P_SAM_PORT = 7656
TAILSCALE_TRANSPORT_PORT = 41641
HIDDEN_SERVICE_VIRTUAL_PORT = 80

SERVICES: dict[str, str] = {
    "overlay": "tailscaled",
    "onion": "tor",
    "garlic": "i2p-router",
    "firewall": "ufw",
}

EXECUTABLES: dict[str, str] = {
    "overlay": "tailscale",
    "onion": "tor",
    "garlic": "i2prouter",
    "firewall": "ufw",
}

STARTUP_UNIT = Path("/etc/systemd/system/secure-stack.service")

DEFAULT_SETTINGS: dict[str, Any] = {
    "max_remediation_cycles": 1,
    "command_timeout": 60.0,
    "advisory_timeout": 20.0,
    "advertise_routes": "10.0.0.0/24",
    "fallback_rules": ["ssh", "http", "https"],
    "lock_file": "/run/securestack.lock",
    "journal_dir": "/var/lib/securestack/runs",
    "work_dir": "/var/lib/securestack/tmp",
}


def default_config_file() -> Path:
    return Path.home() / CONFIG_FILE_NAME


__all__ = [
    "CONFIG_ENV_VAR",
    "CONFIG_FILE_NAME",
    "DEFAULT_SETTINGS",
    "EXECUTABLES",
    "HIDDEN_SERVICE_VIRTUAL_PORT",
    "I2P_BOB_PORT",
    "I2P_CONFIG_DIR",
    "I2P_CONSOLE_PORT",
    "I2P_HTTPS_PROXY_PORT",
    "I2P_HTTP_PROXY_PORT",
    "I2P_I2CP_PORT",
    "I2P_SAM_PORT",
    "OVERLAY_INTERFACE",
    "SERVICES",
    "STARTUP_UNIT",
    "TAILSCALE_CONFIG_DIR",
    "TAILSCALE_TRANSPORT_PORT",
    "TOR_CONFIG_DIR",
    "TOR_CONTROL_PORT",
    "TOR_HIDDEN_SERVICE_DIR",
    "TOR_SOCKS_PORT",
    "TOR_USER",
    "UFW_RULES_FILE",
    "default_config_file",
]
