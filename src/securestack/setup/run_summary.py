"""Run summary panel model and command logging for provisioning runs."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, List, Sequence

from rich import box
from rich.console import Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .orchestrator import StageRecord


_STATUS_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "rolled-back": "yellow",
    "pending": "dim",
}


@dataclass
class CommandRecord:
    """Diagnostic information about a host command."""

    command: Sequence[str]
    cwd: str | None = None
    duration: float = 0.0
    exit_code: int | None = None
    stderr: str | None = None
    dry_run: bool = False
    started_at: float = field(default_factory=time.perf_counter)

    def finalize(self, *, exit_code: int | None, stderr: str | None, duration: float) -> None:
        self.exit_code = exit_code
        self.stderr = (stderr or "").strip() or None
        self.duration = duration

    @property
    def command_str(self) -> str:
        return " ".join(map(str, self.command))

    def status_badge(self) -> str:
        if self.dry_run:
            return "[cyan]planned[/]"
        if self.exit_code == 0:
            return "[green]OK[/]"
        if self.exit_code is None:
            return "[red]timeout[/]"
        return f"[red]exit {self.exit_code}[/]"

    def duration_text(self) -> str:
        return f"{self.duration:.2f}s"


@dataclass
class RunSummary:
    """Aggregate diagnostic state rendered at the end of a run."""

    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    commands: List[CommandRecord] = field(default_factory=list)
    stages: List[Any] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def add_error(self, message: str) -> None:
        with self._lock:
            self.errors.append(message)

    def begin_command(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        dry_run: bool = False,
    ) -> CommandRecord:
        record = CommandRecord(tuple(command), cwd=cwd, dry_run=dry_run)
        with self._lock:
            self.commands.append(record)
        return record

    def record_stages(self, records: Sequence["StageRecord"]) -> None:
        with self._lock:
            self.stages = list(records)

    def latest_error(self) -> str | None:
        return self.errors[-1] if self.errors else None

    def as_panel(self) -> RenderableType:
        stats = Table.grid(padding=(0, 2))
        stats.add_column(justify="left")
        stats.add_column(justify="right")
        stats.add_row("Commands", Text(str(len(self.commands)), style="bold cyan"))
        stats.add_row("Warnings", Text(str(len(self.warnings)), style="bold yellow"))
        stats.add_row("Errors", Text(str(len(self.errors)), style="bold red"))

        sections: List[RenderableType] = [stats]

        if self.stages:
            stage_table = Table(expand=True, header_style="bold magenta", box=box.SIMPLE_HEAVY)
            stage_table.add_column("#", no_wrap=True)
            stage_table.add_column("Stage", no_wrap=True)
            stage_table.add_column("Status", no_wrap=True)
            stage_table.add_column("Attempts", no_wrap=True, justify="right")
            stage_table.add_column("Last error", ratio=1, overflow="fold")
            for record in self.stages:
                status = record.status.value
                style = _STATUS_STYLES.get(status, "white")
                stage_table.add_row(
                    str(record.order),
                    record.name.value,
                    f"[{style}]{status}[/]",
                    str(record.attempts),
                    escape(record.last_error or ""),
                )
            sections.append(stage_table)

        command_table = Table(expand=True, header_style="bold magenta", box=box.SIMPLE_HEAVY)
        command_table.add_column("Command", overflow="fold", ratio=2)
        command_table.add_column("Status", no_wrap=True)
        command_table.add_column("Duration", no_wrap=True)
        command_table.add_column("Notes", ratio=1, overflow="fold")
        if self.commands:
            for record in self.commands:
                notes = f"[dim]{escape(record.stderr)}[/]" if record.stderr else ""
                command_table.add_row(
                    escape(record.command_str),
                    record.status_badge(),
                    record.duration_text(),
                    notes,
                )
        else:
            command_table.add_row("(no commands recorded)", "", "", "")
        sections.append(command_table)

        detail_rows = Table.grid(padding=(0, 2))
        if self.warnings:
            detail_rows.add_row(
                Text("Warnings", style="bold yellow"),
                Text("\n".join(self.warnings), style="yellow"),
            )
        if self.errors:
            detail_rows.add_row(
                Text("Errors", style="bold red"),
                Text("\n".join(self.errors), style="red"),
            )
        if detail_rows.row_count:
            sections.append(detail_rows)

        return Panel(Group(*sections), title="Run Summary", border_style="magenta", padding=(1, 2))


__all__ = ["CommandRecord", "RunSummary"]
