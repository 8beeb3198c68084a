"""Declarative resolution of each layer's configuration location.

Every layer is described by a :class:`PathRule`. Resolution walks an explicit
override, an environment variable and then the rule's candidate list, and
returns either a :class:`ResolvedPath` naming where the match came from or a
:class:`UseDefault` carrying the rule's default location.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Union

from . import defaults


@dataclass(frozen=True)
class PathRule:
    """Where to look for one layer's configuration directory or file."""

    key: str
    layer: str
    default: Path
    candidates: tuple[Path, ...] = ()
    kind: str = "dir"
    env_var: str | None = None

    def matches(self, path: Path) -> bool:
        if self.kind == "file":
            return path.is_file()
        return path.is_dir()


@dataclass(frozen=True)
class ResolvedPath:
    path: Path
    source: str


@dataclass(frozen=True)
class UseDefault:
    path: Path
    reason: str = "no candidate found"


PathResolution = Union[ResolvedPath, UseDefault]


PATH_RULES: tuple[PathRule, ...] = (
    PathRule(
        key="tailscale_config_dir",
        layer="overlay",
        default=defaults.TAILSCALE_CONFIG_DIR,
        candidates=(
            defaults.TAILSCALE_CONFIG_DIR,
            Path("/usr/local/etc/tailscale"),
            Path("/var/lib/tailscale"),
        ),
        env_var="SECURESTACK_TAILSCALE_DIR",
    ),
    PathRule(
        key="tor_config_dir",
        layer="onion",
        default=defaults.TOR_CONFIG_DIR,
        candidates=(defaults.TOR_CONFIG_DIR, Path("/usr/local/etc/tor")),
        env_var="SECURESTACK_TOR_DIR",
    ),
    PathRule(
        key="i2p_config_dir",
        layer="garlic",
        default=defaults.I2P_CONFIG_DIR,
        candidates=(
            defaults.I2P_CONFIG_DIR,
            Path("/var/lib/i2p/i2p-config"),
            Path("/usr/share/i2p"),
        ),
        env_var="SECURESTACK_I2P_DIR",
    ),
    PathRule(
        key="ufw_rules_file",
        layer="firewall",
        default=defaults.UFW_RULES_FILE,
        candidates=(defaults.UFW_RULES_FILE, Path("/lib/ufw/user.rules")),
        kind="file",
        env_var="SECURESTACK_UFW_RULES",
    ),
)


def resolve_path(
    rule: PathRule,
    *,
    configured: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
    matcher: Callable[[PathRule, Path], bool] | None = None,
) -> PathResolution:
    """Resolve *rule* into a concrete location.

    An explicit *configured* value wins without a filesystem check because it
    was either typed by the operator or remembered from an earlier run.
    """

    if configured:
        return ResolvedPath(Path(configured).expanduser(), "config")
    env = os.environ if environ is None else environ
    check = matcher or (lambda r, p: r.matches(p))
    if rule.env_var and env.get(rule.env_var):
        return ResolvedPath(Path(env[rule.env_var]).expanduser(), "env")
    for candidate in rule.candidates:
        if check(rule, candidate):
            return ResolvedPath(candidate, "search")
    return UseDefault(rule.default)


@dataclass(frozen=True)
class LayerPaths:
    """Resolved configuration locations for every layer."""

    overlay_dir: Path = defaults.TAILSCALE_CONFIG_DIR
    onion_dir: Path = defaults.TOR_CONFIG_DIR
    garlic_dir: Path = defaults.I2P_CONFIG_DIR
    firewall_rules_file: Path = defaults.UFW_RULES_FILE
    sources: Mapping[str, str] = field(default_factory=dict, compare=False)

    def as_dict(self) -> dict[str, str]:
        return {
            "tailscale_config_dir": str(self.overlay_dir),
            "tor_config_dir": str(self.onion_dir),
            "i2p_config_dir": str(self.garlic_dir),
            "ufw_rules_file": str(self.firewall_rules_file),
        }


_FIELD_FOR_KEY = {
    "tailscale_config_dir": "overlay_dir",
    "tor_config_dir": "onion_dir",
    "i2p_config_dir": "garlic_dir",
    "ufw_rules_file": "firewall_rules_file",
}


def resolve_layer_paths(
    configured: Mapping[str, str] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    matcher: Callable[[PathRule, Path], bool] | None = None,
    rules: tuple[PathRule, ...] = PATH_RULES,
) -> LayerPaths:
    values: dict[str, Path] = {}
    sources: dict[str, str] = {}
    configured = configured or {}
    for rule in rules:
        resolution = resolve_path(
            rule,
            configured=configured.get(rule.key),
            environ=environ,
            matcher=matcher,
        )
        values[_FIELD_FOR_KEY[rule.key]] = resolution.path
        sources[rule.key] = (
            resolution.source if isinstance(resolution, ResolvedPath) else "default"
        )
    return LayerPaths(sources=sources, **values)


__all__ = [
    "LayerPaths",
    "PATH_RULES",
    "PathResolution",
    "PathRule",
    "ResolvedPath",
    "UseDefault",
    "resolve_layer_paths",
    "resolve_path",
]
