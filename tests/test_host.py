from __future__ import annotations

import stat
import sys

import pytest

from securestack.errors import CommandError, CommandTimeoutError, DependencyMissingError
from securestack.utils.host import DryRunHost, Host


def test_run_records_command_and_raises_on_failure() -> None:
    host = Host()
    result = host.run([sys.executable, "-c", "print('ok')"])
    assert result.stdout.strip() == "ok"

    with pytest.raises(CommandError) as excinfo:
        host.run([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"])
    assert excinfo.value.exit_code == 3
    assert excinfo.value.stderr == "bad"
    assert [record.exit_code for record in host.summary.commands] == [0, 3]


def test_missing_executable_is_dependency_error() -> None:
    with pytest.raises(DependencyMissingError):
        Host().run(["securestack-definitely-missing-binary"])


def test_hung_command_times_out() -> None:
    with pytest.raises(CommandTimeoutError):
        Host(timeout=0.2).run([sys.executable, "-c", "import time; time.sleep(5)"])


def test_secrets_are_redacted_from_records() -> None:
    host = DryRunHost()
    host.run(["tailscale", "up", "--authkey=tskey-secret"], secrets=["tskey-secret"])
    assert host.planned == ["tailscale up --authkey=****"]
    assert host.summary.commands[0].dry_run


def test_write_text_is_atomic_with_mode(tmp_path) -> None:
    host = Host()
    target = tmp_path / "acl.json"
    host.write_text(target, "{}\n", mode=0o600)
    assert target.read_text(encoding="utf-8") == "{}\n"
    assert stat.S_IMODE(target.stat().st_mode) == 0o600
    assert list(tmp_path.iterdir()) == [target]
    assert host.read_text(tmp_path / "absent") is None


def test_directories_are_only_removed_when_empty(tmp_path) -> None:
    host = Host()
    directory = tmp_path / "layer"
    assert host.make_dirs(directory) is True
    assert host.make_dirs(directory) is False
    (directory / "keep").write_text("x", encoding="utf-8")
    assert host.remove_dir(directory) is False
    host.remove(directory / "keep")
    assert host.remove_dir(directory) is True


def test_dry_run_host_changes_nothing(tmp_path) -> None:
    host = DryRunHost()
    host.write_text(tmp_path / "torrc", "a\nb\n")
    host.make_dirs(tmp_path / "new")
    assert not (tmp_path / "torrc").exists()
    assert not (tmp_path / "new").exists()
    assert host.planned == [f"write {tmp_path / 'torrc'} (2 lines)", f"mkdir -p {tmp_path / 'new'}"]
