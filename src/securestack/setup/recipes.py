"""Recipe parsing for run tuning (retry budget, timeouts, rule fallbacks)."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence, cast

import yaml

from ..config.defaults import DEFAULT_SETTINGS

STAGE_KEYS: tuple[str, ...] = (
    "overlay-acl",
    "onion-routing",
    "garlic-routing",
    "firewall",
    "overlay-activation",
)

_DEFAULT_RECIPE: dict[str, Any] = {
    "name": "default",
    "config": dict(DEFAULT_SETTINGS),
    "stages": {key: {} for key in STAGE_KEYS},
}


@dataclass
class Recipe:
    """Structured representation of a run recipe."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)
    source: Path | None = None

    @property
    def config(self) -> dict[str, Any]:
        base = dict(_DEFAULT_RECIPE["config"])
        base.update(self.data.get("config", {}))
        return base

    def stage_config(self, stage: Any) -> dict[str, Any]:
        key = getattr(stage, "value", stage)
        stages = self.data.get("stages", {})
        raw = stages.get(key, {})
        if isinstance(raw, dict):
            return dict(raw)
        if raw is None:
            return {}
        return {"value": raw}

    def skipped(self, stage: Any) -> bool:
        return bool(self.stage_config(stage).get("skip"))

    def as_dict(self) -> dict[str, Any]:
        payload = dict(_DEFAULT_RECIPE)
        payload.update(self.data)
        payload["name"] = self.name
        return payload


class RecipeLoader:
    """Load recipes from JSON/YAML files with inheritance support."""

    def __init__(self, search_paths: Sequence[Path] | None = None) -> None:
        default_paths = [Path.cwd() / "recipes", Path("/etc/securestack/recipes")]
        candidates: list[Path] = [Path(p) for p in (search_paths or [])] + default_paths
        self.search_paths: list[Path] = list(dict.fromkeys(candidates))
        self._loading: set[str] = set()

    def load(
        self,
        identifier: str | Path | None,
        *,
        overrides: Mapping[str, Any] | None = None,
    ) -> Recipe:
        if identifier is None:
            data = merge_dicts(_DEFAULT_RECIPE, overrides or {})
            return Recipe(name="default", data=data)
        path = self._resolve(identifier)
        data = self._read_recipe(path)
        name = data.get("name") or path.stem
        merged = self._merge_extends(data, path.parent)
        if overrides:
            merged = merge_dicts(merged, dict(overrides))
        return Recipe(name=name, data=merged, source=path)

    # ------------------------------------------------------------------
    def _merge_extends(self, data: dict[str, Any], base_dir: Path | None) -> dict[str, Any]:
        extends = data.get("extends", [])
        if isinstance(extends, str):
            extends = [extends]
        if not extends:
            return merge_dicts(_DEFAULT_RECIPE, data)
        merged: dict[str, Any] = {}
        for entry in extends:
            parent_path = self._resolve(entry, base_dir=base_dir)
            parent_data = self._read_recipe(parent_path)
            key = str(parent_path)
            self._loading.add(key)
            try:
                parent_merged = self._merge_extends(parent_data, parent_path.parent)
            finally:
                self._loading.discard(key)
            merged = merge_dicts(merged, parent_merged)
        return merge_dicts(merged, data)

    def _resolve(self, identifier: str | Path, *, base_dir: Path | None = None) -> Path:
        candidate = Path(identifier).expanduser()
        if not candidate.suffix:
            for suffix in (".yml", ".yaml", ".json"):
                try:
                    return self._resolve(candidate.with_suffix(suffix), base_dir=base_dir)
                except FileNotFoundError:
                    continue
        if candidate.is_absolute():
            if candidate.exists():
                return candidate
            raise FileNotFoundError(candidate)
        search_space: list[Path] = []
        if base_dir is not None:
            search_space.append(base_dir)
        search_space.append(Path.cwd())
        search_space.extend(self.search_paths)
        for root in search_space:
            path = root / candidate
            if path.exists():
                return path
        raise FileNotFoundError(f"Recipe '{identifier}' not found in {search_space}")

    def _read_recipe(self, path: Path) -> dict[str, Any]:
        key = str(path)
        if key in self._loading:
            raise RuntimeError(f"Circular recipe extends detected: {path}")
        text = path.read_text(encoding="utf-8")
        if path.suffix in {".yml", ".yaml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
        if not isinstance(data, dict):
            raise TypeError(f"Recipe file {path} must contain a mapping")
        return data


def merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries; lists in *override* replace."""

    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        existing = result.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            result[key] = merge_dicts(
                cast(Mapping[str, Any], existing),
                cast(Mapping[str, Any], value),
            )
        else:
            result[key] = value
    return result


__all__ = ["Recipe", "RecipeLoader", "STAGE_KEYS", "merge_dicts"]
