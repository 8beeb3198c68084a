from __future__ import annotations

from securestack.setup.rollback import RollbackLedger, RollbackManager, UndoAction


def _action(log: list[str], stage: str, name: str, *, fail: bool = False, key: str | None = None) -> UndoAction:
    def callback() -> None:
        log.append(name)
        if fail:
            raise RuntimeError(f"{name} broke")

    return UndoAction(stage=stage, description=name, callback=callback, key=key)


def test_unwind_runs_in_reverse_order() -> None:
    log: list[str] = []
    ledger = RollbackLedger()
    for name in ("a1", "a2", "b1", "c1"):
        ledger.push(_action(log, name[0], name))

    report = RollbackManager().unwind(ledger)

    assert log == ["c1", "b1", "a2", "a1"]
    assert report.ok
    assert [action.description for action in report.executed] == ["c1", "b1", "a2", "a1"]


def test_failed_undo_is_logged_and_remaining_actions_still_run(caplog) -> None:
    log: list[str] = []
    ledger = RollbackLedger()
    ledger.push(_action(log, "a", "first"))
    ledger.push(_action(log, "b", "broken", fail=True))
    ledger.push(_action(log, "c", "last"))
    observed: list[tuple[str, bool]] = []

    report = RollbackManager(observer=lambda action, err: observed.append((action.description, err is None))).unwind(
        ledger
    )

    assert log == ["last", "broken", "first"]
    assert not report.ok
    assert [action.description for action, _ in report.failed] == ["broken"]
    assert observed == [("last", True), ("broken", False), ("first", True)]
    assert "Rollback step failed" in caplog.text


def test_ledger_ignores_duplicate_identities() -> None:
    log: list[str] = []
    ledger = RollbackLedger()
    assert ledger.push(_action(log, "onion", "restore torrc", key="file:/etc/tor/torrc"))
    assert not ledger.push(_action(log, "onion", "restore torrc again", key="file:/etc/tor/torrc"))
    assert len(ledger) == 1
    assert ledger.stages() == ("onion",)
