from __future__ import annotations

import json
import random
from pathlib import Path

from securestack.config import defaults
from securestack.console.events import RemediationEvent, StageEvent
from securestack.setup.journal import RunJournal, latest_journal
from securestack.setup.orchestrator import STAGE_ORDER, StageName, StageOrchestrator, StageStatus
from securestack.setup.ports import RESERVED_PORTS, PortAllocator
from securestack.setup.recipes import Recipe

from .conftest import RecordingHost, ScriptedAdvisor


def _recipe(**config) -> Recipe:
    return Recipe(name="test", data={"config": config})


def _orchestrator(host, advisor=None, *, seed: int | None = None, **kwargs) -> StageOrchestrator:
    allocator = PortAllocator(rng=random.Random(seed)) if seed is not None else None
    kwargs.setdefault("recipe", _recipe())
    return StageOrchestrator(host, advisor=advisor or ScriptedAdvisor(), allocator=allocator, **kwargs)


def test_full_run_applies_every_stage_in_order(host, run_config) -> None:
    events: list[StageEvent] = []
    orchestrator = _orchestrator(host)
    orchestrator.subscribe(lambda event: events.append(event) if isinstance(event, StageEvent) else None)

    result = orchestrator.run(run_config)

    assert result.success and result.exit_code == 0
    assert [record.name for record in result.records] == list(STAGE_ORDER)
    assert all(record.status is StageStatus.SUCCEEDED for record in result.records)
    succeeded = [event.stage for event in events if event.status == "succeeded"]
    assert succeeded == list(STAGE_ORDER)
    assert host.commands[-1][:2] == ["tailscale", "up"]
    ports = [assignment.port for assignment in result.allocation]
    assert len(ports) == len(set(ports)) == 4
    assert not set(ports) & RESERVED_PORTS
    firewall = result.record(StageName.FIREWALL).artifacts
    hidden = result.allocation.get("onion", "hidden-service")
    assert f"allow {hidden}/tcp" in firewall["rules"]
    # temporary staging is gone after the stage
    assert not any(str(path).startswith("/var/lib/securestack/tmp") for path in host.files)


def test_rerun_converges_to_identical_configuration(host, run_config) -> None:
    first = _orchestrator(host, seed=11).run(run_config)
    snapshot = dict(host.files)
    second = _orchestrator(host, seed=11).run(run_config)

    assert first.success and second.success
    assert host.files == snapshot
    assert host.files[defaults.TOR_CONFIG_DIR / "torrc"].count("BEGIN securestack") == 1
    assert len(host.ran("ufw", "--force", "reset")) == 2


def test_restart_failure_is_remediated_and_stage_succeeds(host, run_config) -> None:
    host.fail(["systemctl", "restart", "tor"], times=1)
    advisor = ScriptedAdvisor(suggestions=["Restart it:\n```\nsudo systemctl restart tor\n```"])
    remediations: list[RemediationEvent] = []
    orchestrator = _orchestrator(host, advisor)
    orchestrator.subscribe(lambda event: remediations.append(event) if isinstance(event, RemediationEvent) else None)

    result = orchestrator.run(run_config)

    onion = result.record(StageName.ONION_ROUTING)
    assert result.success
    assert onion.status is StageStatus.SUCCEEDED
    assert onion.attempts == 2
    assert advisor.calls[0][0] == "systemctl restart tor"
    assert onion.remediations[0].applied is True
    assert remediations and remediations[0].applied
    assert len(host.ran("systemctl", "restart", "tor")) == 3
    assert host.files[defaults.TOR_CONFIG_DIR / "torrc"].count("HiddenServicePort") == 1


def test_missing_garlic_directory_rolls_back_prior_stages(run_config) -> None:
    host = RecordingHost(dirs=[defaults.TOR_CONFIG_DIR])
    advisor = ScriptedAdvisor(suggestions=["mkdir -p /etc/i2p"])

    result = _orchestrator(host, advisor).run(run_config)

    assert not result.success and result.exit_code == 1
    assert result.failed_stage is StageName.GARLIC_ROUTING
    assert advisor.calls == []
    garlic = result.record(StageName.GARLIC_ROUTING)
    assert garlic.status is StageStatus.FAILED and garlic.attempts == 1
    assert result.record(StageName.OVERLAY_ACL).status is StageStatus.ROLLED_BACK
    assert result.record(StageName.ONION_ROUTING).status is StageStatus.ROLLED_BACK
    assert result.record(StageName.FIREWALL).status is StageStatus.PENDING
    assert host.files == {}
    assert defaults.TAILSCALE_CONFIG_DIR not in host.dirs
    assert defaults.TOR_HIDDEN_SERVICE_DIR not in host.dirs
    undone = [action.stage for action in result.rollback.executed]
    assert undone.index("onion-routing") < undone.index("overlay-acl")
    assert undone == sorted(undone, key=lambda name: [s.value for s in STAGE_ORDER].index(name), reverse=True)
    assert result.rollback.ok


def test_remediation_is_bounded_by_retry_budget(host, run_config) -> None:
    host.fail(["systemctl", "start", "i2p-router"], times=-1)
    advisor = ScriptedAdvisor(suggestions=["systemctl reset-failed i2p-router"] * 10)

    result = _orchestrator(host, advisor).run(run_config)

    garlic = result.record(StageName.GARLIC_ROUTING)
    assert garlic.status is StageStatus.FAILED
    assert garlic.attempts == 2
    assert len(garlic.remediations) == 1
    assert "simulated failure" in garlic.last_error
    assert not result.success
    assert host.summary.errors[-1].startswith("garlic-routing:")


def test_larger_budget_allows_more_cycles(host, run_config) -> None:
    host.fail(["systemctl", "start", "i2p-router"], times=-1)
    orchestrator = _orchestrator(host, ScriptedAdvisor(), recipe=_recipe(max_remediation_cycles=3))

    result = orchestrator.run(run_config)

    garlic = result.record(StageName.GARLIC_ROUTING)
    assert garlic.attempts == 4
    assert [attempt.outcome for attempt in garlic.remediations] == ["no suggestion"] * 3


def test_untrusted_suggestion_is_never_executed(host, run_config) -> None:
    host.fail(["systemctl", "restart", "tor"], times=1)
    advisor = ScriptedAdvisor(suggestions=["rm -rf /var/lib/tor && systemctl restart tor"])

    result = _orchestrator(host, advisor).run(run_config)

    onion = result.record(StageName.ONION_ROUTING)
    assert onion.remediations[0].applied is False
    assert onion.remediations[0].outcome.startswith("rejected")
    assert not host.ran("rm")
    # the stage is still restarted once and the transient failure has cleared
    assert onion.status is StageStatus.SUCCEEDED and onion.attempts == 2
    assert result.success


def test_abort_stops_before_next_stage_and_rolls_back(host, run_config) -> None:
    orchestrator = _orchestrator(host)

    def _abort_after_acl(event) -> None:
        if isinstance(event, StageEvent) and event.stage is StageName.OVERLAY_ACL and event.status == "succeeded":
            orchestrator.request_abort()

    orchestrator.subscribe(_abort_after_acl)
    result = orchestrator.run(run_config)

    assert result.aborted and not result.success and result.exit_code == 1
    assert result.record(StageName.OVERLAY_ACL).status is StageStatus.ROLLED_BACK
    assert result.record(StageName.ONION_ROUTING).status is StageStatus.PENDING
    assert not host.ran("systemctl")
    assert host.files == {}


def test_skipped_stage_is_not_applied(host, run_config) -> None:
    recipe = Recipe(name="no-activation", data={"stages": {"overlay-activation": {"skip": True}}})

    result = _orchestrator(host, recipe=recipe).run(run_config)

    assert result.success
    assert result.record(StageName.OVERLAY_ACTIVATION).status is StageStatus.SKIPPED
    assert not host.ran("tailscale")


def test_journal_records_stages_and_rollback(tmp_path, run_config) -> None:
    host = RecordingHost(dirs=[defaults.TOR_CONFIG_DIR])
    journal = RunJournal(tmp_path / "runs")

    _orchestrator(host, journal=journal).run(run_config)

    entries = latest_journal(tmp_path / "runs")
    assert entries is not None
    assert entries.of_type("run")[0]["recipe"] == "test"
    stages = [(entry["stage"], entry["status"]) for entry in entries.of_type("stage")]
    assert stages == [
        ("overlay-acl", "succeeded"),
        ("onion-routing", "succeeded"),
        ("garlic-routing", "failed"),
    ]
    assert entries.of_type("rollback")[0]["failed"] == []
    assert entries.of_type("result")[0]["status"] == "failed"
    for line in Path(entries.path).read_text(encoding="utf-8").splitlines():
        json.loads(line)


class _UnprivilegedHost(RecordingHost):
    """Corrective commands die with an OS-level error instead of a non-zero exit."""

    def run(self, argv, *, timeout=None, secrets=()):
        if list(argv[:2]) == ["systemctl", "reset-failed"]:
            self.commands.append([str(part) for part in argv])
            raise PermissionError(13, "Permission denied", "systemctl")
        return super().run(argv, timeout=timeout, secrets=secrets)


def test_corrective_os_error_still_rolls_back(run_config, tmp_path) -> None:
    host = _UnprivilegedHost(dirs=[defaults.I2P_CONFIG_DIR, defaults.TOR_CONFIG_DIR, Path("/etc/ufw")])
    host.fail(["systemctl", "restart", "tor"], times=-1)
    advisor = ScriptedAdvisor(suggestions=["systemctl reset-failed tor"])
    journal = RunJournal(tmp_path)

    result = _orchestrator(host, advisor, journal=journal).run(run_config)

    onion = result.record(StageName.ONION_ROUTING)
    assert not result.success and result.failed_stage is StageName.ONION_ROUTING
    assert onion.status is StageStatus.FAILED and onion.attempts == 2
    assert onion.remediations[0].applied is False
    assert onion.remediations[0].outcome.startswith("corrective action failed")
    assert host.ran("systemctl", "reset-failed", "tor")
    assert result.record(StageName.OVERLAY_ACL).status is StageStatus.ROLLED_BACK
    assert host.files == {}
    entries = latest_journal(tmp_path)
    assert entries.of_type("result")[0]["status"] == "failed"
