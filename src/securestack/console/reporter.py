"""Rich console subscriber that reports per-stage progress."""
from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from .events import Event, LogEvent, RemediationEvent, RollbackEvent, RunEvent, StageEvent

_STAGE_MARKUP = {
    "running": "[cyan]→[/] {stage} (attempt {attempt})",
    "succeeded": "[green]✔[/] {stage}",
    "remediating": "[yellow]⚠[/] {stage} failed: {error}; consulting advisory service",
    "retrying": "[yellow]↻[/] {stage} retrying",
    "failed": "[red]✖[/] {stage} failed: {error}",
    "rolled-back": "[yellow]↺[/] {stage} rolled back",
    "skipped": "[dim]- {stage} skipped[/]",
}


class ConsoleReporter:
    """Translate orchestrator events into console lines."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(highlight=False)

    def __call__(self, event: Event) -> None:
        if isinstance(event, StageEvent):
            template = _STAGE_MARKUP.get(event.status)
            if template is None:
                return
            stage = event.stage.value if hasattr(event.stage, "value") else str(event.stage)
            self.console.print(
                template.format(stage=stage, attempt=event.attempt, error=escape(event.error or ""))
            )
        elif isinstance(event, RemediationEvent):
            if event.suggestion is None:
                self.console.print(f"  [dim]no usable suggestion ({escape(event.outcome)})[/]")
            elif event.applied:
                self.console.print(f"  [cyan]applied[/] {escape(event.suggestion)}: {escape(event.outcome)}")
            else:
                self.console.print(f"  [yellow]rejected[/] suggestion: {escape(event.outcome)}")
        elif isinstance(event, RollbackEvent):
            mark = "[green]✔[/]" if event.ok else "[red]✖[/]"
            detail = f" ({escape(event.error)})" if event.error else ""
            self.console.print(f"  {mark} undo {escape(event.description)}{detail}")
        elif isinstance(event, RunEvent):
            if event.status == "rollback":
                self.console.print("[yellow]Rolling back applied stages...[/]")
            elif event.status == "aborting":
                self.console.print("[yellow]Abort requested; finishing current action[/]")
        elif isinstance(event, LogEvent) and event.level in {"warning", "error"}:
            style = "yellow" if event.level == "warning" else "red"
            self.console.print(f"[{style}]{escape(event.message)}[/]")


__all__ = ["ConsoleReporter"]
