from __future__ import annotations

import json

import pytest

from securestack.setup.recipes import RecipeLoader, merge_dicts


def test_default_recipe_carries_run_settings() -> None:
    recipe = RecipeLoader(search_paths=[]).load(None)
    assert recipe.name == "default"
    assert recipe.config["max_remediation_cycles"] == 1
    assert recipe.config["fallback_rules"] == ["ssh", "http", "https"]
    assert recipe.config["advertise_routes"] == "10.0.0.0/24"
    assert not recipe.skipped("firewall")


def test_json_recipe_extends_yaml_parent(tmp_path) -> None:
    (tmp_path / "base.yml").write_text(
        "config:\n  command_timeout: 30\n  fallback_rules: [ssh]\nstages:\n  overlay-activation:\n    skip: true\n",
        encoding="utf-8",
    )
    child = tmp_path / "child.json"
    child.write_text(
        json.dumps({"name": "lab", "extends": ["base"], "config": {"max_remediation_cycles": 2}}),
        encoding="utf-8",
    )

    recipe = RecipeLoader(search_paths=[tmp_path]).load(child)

    assert recipe.name == "lab"
    assert recipe.source == child
    assert recipe.config["command_timeout"] == 30
    assert recipe.config["max_remediation_cycles"] == 2
    assert recipe.config["fallback_rules"] == ["ssh"]
    assert recipe.skipped("overlay-activation")


def test_circular_extends_is_detected(tmp_path) -> None:
    (tmp_path / "a.json").write_text(json.dumps({"extends": ["b"]}), encoding="utf-8")
    (tmp_path / "b.json").write_text(json.dumps({"extends": ["a"]}), encoding="utf-8")
    with pytest.raises(RuntimeError):
        RecipeLoader(search_paths=[tmp_path]).load(tmp_path / "a.json")


def test_missing_recipe_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        RecipeLoader(search_paths=[tmp_path]).load(tmp_path / "nope.json")


def test_merge_dicts_is_recursive_and_lists_replace() -> None:
    merged = merge_dicts({"a": {"b": 1, "c": [1]}, "d": 1}, {"a": {"c": [2]}, "e": 2})
    assert merged == {"a": {"b": 1, "c": [2]}, "d": 1, "e": 2}
