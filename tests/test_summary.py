from __future__ import annotations

from rich.console import Console

from securestack.console.events import RemediationEvent, RollbackEvent, RunEvent, StageEvent
from securestack.console.reporter import ConsoleReporter
from securestack.setup.orchestrator import StageName, StageRecord, StageStatus
from securestack.setup.run_summary import RunSummary
from securestack.setup.startup import render_unit


def _console() -> Console:
    return Console(record=True, width=120, color_system=None)


def test_summary_panel_lists_stages_commands_and_errors() -> None:
    summary = RunSummary()
    record = summary.begin_command(["systemctl", "restart", "tor"])
    record.finalize(exit_code=1, stderr="Job failed", duration=0.4)
    summary.add_warning("Firewall rules fell back to the static set")
    summary.add_error("garlic-routing: directory missing")
    summary.record_stages(
        [
            StageRecord(StageName.OVERLAY_ACL, 1, status=StageStatus.ROLLED_BACK, attempts=1),
            StageRecord(StageName.GARLIC_ROUTING, 3, status=StageStatus.FAILED, attempts=1, last_error="missing"),
        ]
    )
    console = _console()
    console.print(summary.as_panel())
    text = console.export_text()

    assert "overlay-acl" in text and "rolled-back" in text
    assert "garlic-routing" in text and "failed" in text
    assert "systemctl restart tor" in text
    assert "Firewall rules fell back" in text
    assert summary.latest_error() == "garlic-routing: directory missing"


def test_reporter_prints_stage_progress() -> None:
    console = _console()
    reporter = ConsoleReporter(console)
    reporter(StageEvent(StageName.ONION_ROUTING, status="running", attempt=1))
    reporter(StageEvent(StageName.ONION_ROUTING, status="remediating", attempt=1, error="restart [failed]"))
    reporter(RemediationEvent(StageName.ONION_ROUTING, suggestion="systemctl restart tor", applied=True, outcome="applied restart tor"))
    reporter(RunEvent("rollback"))
    reporter(RollbackEvent("remove generated section from /etc/tor/torrc", ok=False, error="boom"))
    text = console.export_text()

    assert "onion-routing (attempt 1)" in text
    assert "restart [failed]" in text
    assert "applied restart tor" in text
    assert "Rolling back" in text
    assert "undo remove generated section from /etc/tor/torrc (boom)" in text


def test_startup_unit_runs_provision_once() -> None:
    unit = render_unit("/usr/local/bin/securestack provision")
    assert "Type=oneshot" in unit
    assert "ExecStart=/usr/local/bin/securestack provision" in unit
    assert "WantedBy=multi-user.target" in unit
