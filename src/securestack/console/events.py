"""Event primitives published by the orchestrator to console subscribers."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageName


class EventType(str, Enum):
    """Kinds of events emitted during a run."""

    RUN = "run"
    STAGE = "stage"
    REMEDIATION = "remediation"
    ROLLBACK = "rollback"
    LOG = "log"


@dataclass(slots=True)
class Event:
    """Base event payload."""

    type: EventType
    payload: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": dict(self.payload)}


class RunEvent(Event):
    """Run lifecycle transition (started, succeeded, failed, aborted)."""

    __slots__ = ("status",)

    def __init__(self, status: str, *, payload: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(EventType.RUN, payload or {})
        self.status = status

    def as_dict(self) -> dict[str, Any]:
        data = super().as_dict()
        data["status"] = self.status
        return data


class StageEvent(Event):
    """Stage status transition."""

    __slots__ = ("stage", "status", "attempt", "error")

    def __init__(
        self,
        stage: "StageName",
        *,
        status: str,
        attempt: int = 0,
        error: str | None = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(EventType.STAGE, payload or {})
        self.stage = stage
        self.status = status
        self.attempt = attempt
        self.error = error

    def as_dict(self) -> dict[str, Any]:
        data = super().as_dict()
        data.update(
            {
                "stage": self.stage.value if hasattr(self.stage, "value") else str(self.stage),
                "status": self.status,
                "attempt": self.attempt,
                "error": self.error,
            }
        )
        return data


class RemediationEvent(Event):
    """A remediation attempt was made for a failed stage."""

    __slots__ = ("stage", "suggestion", "applied", "outcome")

    def __init__(
        self,
        stage: "StageName",
        *,
        suggestion: str | None,
        applied: bool,
        outcome: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(EventType.REMEDIATION, payload or {})
        self.stage = stage
        self.suggestion = suggestion
        self.applied = applied
        self.outcome = outcome


class RollbackEvent(Event):
    """An undo action ran during rollback."""

    __slots__ = ("description", "ok", "error")

    def __init__(
        self,
        description: str,
        *,
        ok: bool,
        error: str | None = None,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(EventType.ROLLBACK, payload or {})
        self.description = description
        self.ok = ok
        self.error = error


class LogEvent(Event):
    """Free-form message for console subscribers."""

    __slots__ = ("level", "message")

    def __init__(self, level: str, message: str, *, payload: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(EventType.LOG, payload or {})
        self.level = level
        self.message = message


__all__ = [
    "Event",
    "EventType",
    "LogEvent",
    "RemediationEvent",
    "RollbackEvent",
    "RunEvent",
    "StageEvent",
]
