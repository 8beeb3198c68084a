"""Configuration loading and path resolution."""
from __future__ import annotations

from .defaults import DEFAULT_SETTINGS
from .paths import LayerPaths, PathRule, ResolvedPath, UseDefault, resolve_layer_paths, resolve_path
from .store import AdvisoryCredentials, ConfigStore, RunConfig

__all__ = [
    "AdvisoryCredentials",
    "ConfigStore",
    "DEFAULT_SETTINGS",
    "LayerPaths",
    "PathRule",
    "ResolvedPath",
    "RunConfig",
    "UseDefault",
    "resolve_layer_paths",
    "resolve_path",
]
