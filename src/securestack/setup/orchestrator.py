"""Stage orchestrator: ordered pipeline, remediation loop and rollback."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from ..config import defaults
from ..config.store import RunConfig
from ..console.events import Event, LogEvent, RemediationEvent, RollbackEvent, RunEvent, StageEvent
from ..errors import CommandError, SecureStackError, ValidationError, is_recoverable
from ..layers import (
    FirewallConfigurator,
    GarlicRoutingConfigurator,
    LayerConfigurator,
    OnionRoutingConfigurator,
    OverlayAclConfigurator,
    OverlayActivationConfigurator,
)
from ..utils.host import Host
from .corrective import CorrectiveActionCatalog
from .journal import RunJournal
from .ports import PortAllocation, PortAllocator
from .recipes import Recipe, RecipeLoader
from .remediation import RemediationAdvisor, RemediationAttempt
from .rollback import RollbackLedger, RollbackManager, RollbackReport, UndoAction
from .run_summary import RunSummary


class StageName(Enum):
    """Stages executed by the orchestrator."""

    OVERLAY_ACL = "overlay-acl"
    ONION_ROUTING = "onion-routing"
    GARLIC_ROUTING = "garlic-routing"
    FIREWALL = "firewall"
    OVERLAY_ACTIVATION = "overlay-activation"


# Firewall rules reference ports chosen by earlier layers; routes are
# advertised only once every layer is live.
STAGE_ORDER: tuple[StageName, ...] = (
    StageName.OVERLAY_ACL,
    StageName.ONION_ROUTING,
    StageName.GARLIC_ROUTING,
    StageName.FIREWALL,
    StageName.OVERLAY_ACTIVATION,
)


class StageStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    REMEDIATING = "remediating"
    RETRYING = "retrying"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"
    SKIPPED = "skipped"


@dataclass
class StageRecord:
    """Per-stage bookkeeping, mutated only by the orchestrator."""

    name: StageName
    order: int
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    remediations: list[RemediationAttempt] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.name.value,
            "order": self.order,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "artifacts": self.artifacts,
            "remediations": [attempt.as_dict() for attempt in self.remediations],
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class RunResult:
    success: bool
    records: list[StageRecord]
    rollback: RollbackReport | None = None
    aborted: bool = False
    failed_stage: StageName | None = None
    allocation: PortAllocation | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def record(self, name: StageName) -> StageRecord:
        for record in self.records:
            if record.name is name:
                return record
        raise KeyError(name)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "aborted": self.aborted,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "stages": [record.as_dict() for record in self.records],
            "ports": self.allocation.as_dict() if self.allocation is not None else [],
            "rollback": self.rollback.as_dict() if self.rollback is not None else None,
        }


@dataclass
class StageContext:
    """Everything a configurator may touch while applying one stage."""

    stage: StageName
    config: RunConfig
    host: Host
    allocator: PortAllocator
    settings: Mapping[str, Any]
    advisor: RemediationAdvisor | None = None
    summary: RunSummary | None = None
    publish: Callable[[Event], None] | None = None
    pending: list[UndoAction] = field(default_factory=list)
    temp_files: list[Path] = field(default_factory=list)

    @property
    def allocation(self) -> PortAllocation:
        return self.allocator.allocation

    def record_undo(
        self,
        description: str,
        callback: Callable[[], object],
        *,
        key: str | None = None,
    ) -> UndoAction:
        """Register an undo step; a retried stage re-registering *key* is a no-op."""

        action = UndoAction(stage=self.stage.value, description=description, callback=callback, key=key)
        for existing in self.pending:
            if existing.identity == action.identity:
                return existing
        self.pending.append(action)
        return action

    def warn(self, message: str) -> None:
        if self.summary is not None:
            self.summary.add_warning(message)
        if self.publish is not None:
            self.publish(LogEvent("warning", message, payload={"stage": self.stage.value}))

    def temp_file(self, name: str, content: str) -> Path:
        """Stage a temporary artifact removed after the stage or on rollback."""

        work_dir = Path(self.settings.get("work_dir") or defaults.DEFAULT_SETTINGS["work_dir"])
        self.host.make_dirs(work_dir)
        path = work_dir / f"{self.stage.value}-{name}"
        self.host.write_text(path, content, mode=0o600)
        self.record_undo(f"delete temporary file {path}", lambda: self.host.remove(path), key=f"temp:{path}")
        if path not in self.temp_files:
            self.temp_files.append(path)
        return path

    def discard_temp_files(self) -> None:
        for path in self.temp_files:
            self.host.remove(path)
        self.temp_files.clear()


def default_configurators() -> dict[StageName, LayerConfigurator]:
    return {
        StageName.OVERLAY_ACL: OverlayAclConfigurator(),
        StageName.ONION_ROUTING: OnionRoutingConfigurator(),
        StageName.GARLIC_ROUTING: GarlicRoutingConfigurator(),
        StageName.FIREWALL: FirewallConfigurator(),
        StageName.OVERLAY_ACTIVATION: OverlayActivationConfigurator(),
    }


class StageOrchestrator:
    """Drive the fixed stage list, remediating and rolling back as needed."""

    def __init__(
        self,
        host: Host,
        *,
        advisor: RemediationAdvisor | None = None,
        recipe: Recipe | None = None,
        catalog: CorrectiveActionCatalog | None = None,
        configurators: Mapping[StageName, LayerConfigurator] | None = None,
        allocator: PortAllocator | None = None,
        journal: RunJournal | None = None,
        summary: RunSummary | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.advisor = advisor
        self.recipe = recipe or RecipeLoader().load(None)
        self.catalog = catalog
        self.configurators = dict(configurators or default_configurators())
        self.allocator = allocator
        self.journal = journal
        self.summary = summary or host.summary
        self.logger = logger or logging.getLogger("securestack.setup.orchestrator")
        self._subscribers: list[Callable[[Event], None]] = []
        self._abort = threading.Event()

    # --- events -------------------------------------------------------
    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], None]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def _publish(self, event: Event) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:  # pragma: no cover - best effort delivery
                self.logger.debug("event subscriber failed", exc_info=True)

    # --- cancellation -------------------------------------------------
    def request_abort(self) -> None:
        """Stop after the in-flight action; no further stage is started."""

        if not self._abort.is_set():
            self.logger.warning("Abort requested")
            self._abort.set()
            self._publish(RunEvent("aborting"))

    @property
    def abort_requested(self) -> bool:
        return self._abort.is_set()

    # --- lifecycle ----------------------------------------------------
    def run(self, config: RunConfig) -> RunResult:
        settings = self.recipe.config
        allocator = self.allocator or PortAllocator()
        catalog = self.catalog or CorrectiveActionCatalog(config.paths)
        records = [StageRecord(name=stage, order=index + 1) for index, stage in enumerate(STAGE_ORDER)]
        ledger = RollbackLedger()
        failed: StageRecord | None = None

        if self.journal is not None:
            self.journal.start(
                {
                    "recipe": self.recipe.name,
                    "dry_run": self.host.dry_run,
                    "stages": [stage.value for stage in STAGE_ORDER],
                    "paths": config.paths.as_dict(),
                }
            )
        self._publish(RunEvent("started", payload={"recipe": self.recipe.name}))
        self.logger.info("Provisioning run started (recipe %s)", self.recipe.name)

        for record in records:
            if self.abort_requested:
                break
            if self.recipe.skipped(record.name):
                record.status = StageStatus.SKIPPED
                self._publish(StageEvent(record.name, status=record.status.value))
                self._journal_stage(record)
                continue
            context = StageContext(
                stage=record.name,
                config=config,
                host=self.host,
                allocator=allocator,
                settings=settings,
                advisor=self.advisor,
                summary=self.summary,
                publish=self._publish,
            )
            if not self._run_stage(record, context, catalog, settings, ledger):
                failed = record
                break

        aborted = self.abort_requested
        rollback: RollbackReport | None = None
        if failed is not None or aborted:
            rollback = self._rollback(records, ledger)
        success = failed is None and not aborted
        if aborted and failed is None:
            self.summary.add_error("Run aborted by operator request; applied stages were rolled back")

        self.summary.record_stages(records)
        result = RunResult(
            success=success,
            records=records,
            rollback=rollback,
            aborted=aborted,
            failed_stage=failed.name if failed else None,
            allocation=allocator.allocation,
        )
        status = "succeeded" if success else ("aborted" if aborted else "failed")
        if self.journal is not None:
            self.journal.record("result", {"status": status, "ports": allocator.allocation.as_dict()})
            self.journal.close()
        self._publish(RunEvent(status, payload=result.as_dict()))
        if failed is not None:
            self.logger.error(
                "Stage %s failed: %s; rollback %s",
                failed.name.value,
                failed.last_error,
                "completed" if rollback is not None and rollback.ok else "attempted with errors",
            )
        else:
            self.logger.info("Provisioning run %s", status)
        return result

    def _run_stage(
        self,
        record: StageRecord,
        context: StageContext,
        catalog: CorrectiveActionCatalog,
        settings: Mapping[str, Any],
        ledger: RollbackLedger,
    ) -> bool:
        configurator = self.configurators[record.name]
        budget = 1 + max(0, int(settings.get("max_remediation_cycles", 1)))
        record.started_at = time.time()
        while True:
            record.attempts += 1
            record.status = StageStatus.RUNNING
            self._publish(StageEvent(record.name, status=record.status.value, attempt=record.attempts))
            try:
                artifacts = configurator.apply(context)
            except Exception as exc:
                record.last_error = str(exc) or type(exc).__name__
                self.logger.warning(
                    "Stage %s attempt %d failed: %s", record.name.value, record.attempts, record.last_error
                )
                if not is_recoverable(exc) or record.attempts >= budget or self.abort_requested:
                    self._fail_stage(record, context, ledger, exc)
                    return False
                record.status = StageStatus.REMEDIATING
                self._publish(
                    StageEvent(
                        record.name,
                        status=record.status.value,
                        attempt=record.attempts,
                        error=record.last_error,
                    )
                )
                attempt = self._remediate(record, exc, context, catalog)
                record.remediations.append(attempt)
                if self.abort_requested:
                    self._fail_stage(record, context, ledger, exc)
                    return False
                record.status = StageStatus.RETRYING
                self._publish(StageEvent(record.name, status=record.status.value, attempt=record.attempts))
                continue
            record.status = StageStatus.SUCCEEDED
            record.artifacts = dict(artifacts or {})
            record.finished_at = time.time()
            ledger.extend(context.pending)
            context.discard_temp_files()
            self._publish(StageEvent(record.name, status=record.status.value, attempt=record.attempts))
            self._journal_stage(record)
            return True

    def _fail_stage(
        self,
        record: StageRecord,
        context: StageContext,
        ledger: RollbackLedger,
        exc: BaseException,
    ) -> None:
        record.status = StageStatus.FAILED
        record.finished_at = time.time()
        # Partial artifacts of the failed stage are undone first.
        ledger.extend(context.pending)
        self.summary.add_error(f"{record.name.value}: {record.last_error}")
        if not isinstance(exc, SecureStackError):
            self.logger.debug("Unexpected error in stage %s", record.name.value, exc_info=exc)
        self._publish(
            StageEvent(record.name, status=record.status.value, attempt=record.attempts, error=record.last_error)
        )
        self._journal_stage(record)

    def _remediate(
        self,
        record: StageRecord,
        exc: BaseException,
        context: StageContext,
        catalog: CorrectiveActionCatalog,
    ) -> RemediationAttempt:
        action = exc.command if isinstance(exc, CommandError) else f"configure {record.name.value}"
        attempt = RemediationAttempt(stage=record.name.value, action=action, error=str(exc))
        if self.advisor is None:
            attempt.outcome = "advisory service not configured"
        else:
            attempt.suggestion = self.advisor.suggest(action, str(exc))
            if attempt.suggestion is None:
                attempt.outcome = "no suggestion"
            else:
                try:
                    corrective = catalog.parse(attempt.suggestion)
                except ValidationError as err:
                    attempt.outcome = f"rejected: {err}"
                    self.logger.warning("Rejected advisory suggestion for %s: %s", record.name.value, err)
                    context.warn(f"Rejected advisory suggestion for {record.name.value}")
                else:
                    try:
                        catalog.apply(corrective, self.host)
                    except Exception as err:
                        attempt.outcome = f"corrective action failed: {err}"
                        self.logger.warning("Corrective action %s failed: %s", corrective, err)
                        if not isinstance(err, SecureStackError):
                            self.logger.debug("Unexpected corrective action error", exc_info=err)
                    else:
                        attempt.applied = True
                        attempt.outcome = f"applied {corrective.description}"
        self._publish(
            RemediationEvent(
                record.name,
                suggestion=attempt.suggestion,
                applied=attempt.applied,
                outcome=attempt.outcome,
            )
        )
        if self.journal is not None:
            self.journal.record("remediation", attempt.as_dict())
        return attempt

    def _rollback(self, records: Sequence[StageRecord], ledger: RollbackLedger) -> RollbackReport:
        self._publish(RunEvent("rollback"))

        def _observe(action: UndoAction, error: BaseException | None) -> None:
            self._publish(
                RollbackEvent(action.description, ok=error is None, error=str(error) if error else None)
            )

        report = RollbackManager(logger=self.logger, observer=_observe).unwind(ledger)
        undone = set(ledger.stages())
        for record in records:
            if record.status is StageStatus.SUCCEEDED and record.name.value in undone:
                record.status = StageStatus.ROLLED_BACK
                self._publish(StageEvent(record.name, status=record.status.value, attempt=record.attempts))
        if self.journal is not None:
            self.journal.record("rollback", report.as_dict())
        for action, error in report.failed:
            self.summary.add_warning(f"Rollback step failed: {action.description}: {error}")
        return report

    def _journal_stage(self, record: StageRecord) -> None:
        if self.journal is not None:
            self.journal.record("stage", record.as_dict())


__all__ = [
    "RunResult",
    "STAGE_ORDER",
    "StageContext",
    "StageName",
    "StageOrchestrator",
    "StageRecord",
    "StageStatus",
    "default_configurators",
]
