from __future__ import annotations

import os

import pytest

from securestack.errors import RunLockError
from securestack.setup import runlock
from securestack.setup.runlock import RunLock


def test_lock_is_exclusive_and_released(tmp_path) -> None:
    path = tmp_path / "securestack.lock"
    with RunLock(path) as lock:
        assert lock.held
        assert path.read_text(encoding="utf-8").strip() == str(os.getpid())
    assert not path.exists()


def test_live_owner_blocks_second_run(tmp_path) -> None:
    path = tmp_path / "securestack.lock"
    path.write_text(f"{os.getppid()}\n", encoding="utf-8")
    with pytest.raises(RunLockError):
        RunLock(path).acquire()
    assert path.exists()


def test_stale_lock_is_reclaimed(tmp_path, monkeypatch) -> None:
    path = tmp_path / "securestack.lock"
    path.write_text("999999\n", encoding="utf-8")
    monkeypatch.setattr(runlock.psutil, "pid_exists", lambda pid: False)

    lock = RunLock(path).acquire()

    assert lock.held
    assert lock.owner() == os.getpid()
    lock.release()
    assert not path.exists()
