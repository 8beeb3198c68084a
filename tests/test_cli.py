from __future__ import annotations

import json

import pytest

from securestack.cli import _cli


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        _cli.main(argv)
    return int(excinfo.value.code)


def test_provision_is_the_default_command() -> None:
    args = _cli._parse_args(["--dry-run"])
    assert args.command == "provision"
    assert args.dry_run is True
    args = _cli._parse_args(["provision", "--verbose"])
    assert args.command == "provision" and args.verbose is True and args.dry_run is False


def test_non_root_provision_fails_fast(monkeypatch, capsys) -> None:
    monkeypatch.setattr(_cli, "is_root", lambda: False)
    assert _exit_code(["provision"]) == 1
    assert "must run as root" in capsys.readouterr().out


def test_missing_credentials_exit_one(monkeypatch, tmp_path, capsys) -> None:
    monkeypatch.setattr(_cli, "is_root", lambda: True)
    assert _exit_code(["--config", str(tmp_path / "absent.json")]) == 1
    assert "Credentials file" in capsys.readouterr().out


def test_unreadable_recipe_exit_one(monkeypatch, tmp_path, capsys) -> None:
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"gemini_api_key": "k", "gemini_api_url": "https://a.example"}), encoding="utf-8")
    assert _exit_code(["--dry-run", "--config", str(config), "--recipe", str(tmp_path / "nope.json")]) == 1
    assert "Cannot load recipe" in capsys.readouterr().out


def test_install_unit_dry_run_reports_plan(capsys) -> None:
    assert _exit_code(["install-unit", "--dry-run"]) == 0
    out = capsys.readouterr().out
    assert "secure-stack.service" in out
    assert "daemon-reload" in out
