"""Rollback ledger and best-effort unwinding of applied stages."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class UndoAction:
    """One reversible step recorded by a stage."""

    stage: str
    description: str
    callback: Callable[[], object] = field(compare=False, repr=False)
    key: str | None = None

    @property
    def identity(self) -> str:
        return self.key or f"{self.stage}:{self.description}"

    def __call__(self) -> None:
        self.callback()


class RollbackLedger:
    """Append-only sequence of undo actions in application order."""

    def __init__(self) -> None:
        self._entries: list[UndoAction] = []
        self._identities: set[str] = set()

    def push(self, action: UndoAction) -> bool:
        """Record *action* unless an action with the same identity exists."""

        if action.identity in self._identities:
            return False
        self._entries.append(action)
        self._identities.add(action.identity)
        return True

    def extend(self, actions: Sequence[UndoAction]) -> None:
        for action in actions:
            self.push(action)

    def __iter__(self) -> Iterator[UndoAction]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def reversed(self) -> tuple[UndoAction, ...]:
        return tuple(reversed(self._entries))

    def stages(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(entry.stage for entry in self._entries))


@dataclass
class RollbackReport:
    executed: list[UndoAction] = field(default_factory=list)
    failed: list[tuple[UndoAction, BaseException]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_dict(self) -> dict[str, object]:
        return {
            "executed": [action.description for action in self.executed],
            "failed": [
                {"action": action.description, "error": repr(exc)} for action, exc in self.failed
            ],
        }


UndoObserver = Callable[[UndoAction, "BaseException | None"], None]


class RollbackManager:
    """Execute a ledger's undo actions newest first.

    A failing undo action is logged and the remaining actions still run.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        observer: UndoObserver | None = None,
    ) -> None:
        self.logger = logger or _LOGGER
        self._observer = observer

    def unwind(self, ledger: RollbackLedger) -> RollbackReport:
        report = RollbackReport()
        for action in ledger.reversed():
            self.logger.info("Rollback: %s", action.description)
            error: BaseException | None = None
            try:
                action()
            except Exception as exc:
                error = exc
                report.failed.append((action, exc))
                self.logger.warning("Rollback step failed: %s: %s", action.description, exc)
            else:
                report.executed.append(action)
            if self._observer is not None:
                try:
                    self._observer(action, error)
                except Exception:  # pragma: no cover - observers are best effort
                    self.logger.debug("rollback observer failed", exc_info=True)
        return report


__all__ = ["RollbackLedger", "RollbackManager", "RollbackReport", "UndoAction"]
