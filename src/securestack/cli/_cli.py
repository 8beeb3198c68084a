"""Argument parsing and CLI orchestration for provisioning runs."""
from __future__ import annotations

import argparse
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..config import ConfigStore
from ..console import ConsoleReporter
from ..errors import CredentialsMissingError, PrivilegeError, RunLockError, SecureStackError
from ..setup.journal import RunJournal
from ..setup.orchestrator import StageOrchestrator
from ..setup.recipes import Recipe, RecipeLoader
from ..setup.remediation import RemediationAdvisor
from ..setup.run_summary import RunSummary
from ..setup.runlock import RunLock
from ..setup.startup import install_unit
from ..utils.host import DryRunHost, Host, is_root
from ..utils.logging_config import setup_logging

__all__ = ["main"]

logger = logging.getLogger("securestack.cli")


def _add_run_options(parser: argparse.ArgumentParser, *, suppress: bool = False) -> None:
    default: Any = argparse.SUPPRESS if suppress else None
    flag_default: Any = argparse.SUPPRESS if suppress else False
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=flag_default,
        help="Report intended actions without applying them",
    )
    parser.add_argument("--config", type=Path, default=default, help="Credentials file")
    parser.add_argument("--recipe", type=str, default=default, help="Recipe file (JSON or YAML)")
    parser.add_argument("-v", "--verbose", action="store_true", default=flag_default)
    parser.add_argument("--log-file", type=str, default=default)


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="securestack",
        description="Provision the overlay, onion, garlic and firewall layers on this host.",
    )
    _add_run_options(parser)
    sub = parser.add_subparsers(dest="command", required=False)
    p_provision = sub.add_parser("provision", help="Run the full provisioning pipeline (default)")
    _add_run_options(p_provision, suppress=True)
    p_unit = sub.add_parser("install-unit", help="Install the boot-time systemd unit")
    _add_run_options(p_unit, suppress=True)
    parser.set_defaults(command="provision")
    return parser.parse_args(argv)


def _require_root(action: str) -> None:
    if not is_root():
        raise PrivilegeError(f"securestack {action} must run as root (try sudo)")


@contextlib.contextmanager
def _abort_on_signals(handler: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to *handler* for the duration of the block."""

    def _handle(signum: int, frame: object) -> None:
        logger.warning("Received %s", signal.Signals(signum).name)
        handler()

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _render_plan(console: Console, host: DryRunHost) -> None:
    table = Table(title="Planned actions (dry run)", header_style="bold magenta", expand=True)
    table.add_column("#", no_wrap=True, justify="right")
    table.add_column("Action", overflow="fold")
    for index, action in enumerate(host.planned, start=1):
        table.add_row(str(index), escape(action))
    if not host.planned:
        table.add_row("", "(nothing to do)")
    console.print(table)


def _load_recipe(identifier: str | None) -> Recipe:
    try:
        return RecipeLoader().load(identifier)
    except (OSError, ValueError, TypeError, RuntimeError, yaml.YAMLError) as exc:
        raise SecureStackError(f"Cannot load recipe {identifier}: {exc}") from exc


def provision(args: argparse.Namespace, console: Console) -> int:
    dry_run = bool(args.dry_run)
    if not dry_run:
        _require_root("provision")
    store = ConfigStore(args.config)
    config = store.load()
    recipe = _load_recipe(args.recipe)
    settings = recipe.config

    summary = RunSummary()
    host_cls = DryRunHost if dry_run else Host
    host = host_cls(summary, timeout=float(settings["command_timeout"]))
    advisor = RemediationAdvisor(config.credentials, timeout=float(settings["advisory_timeout"]))
    journal = None if dry_run else RunJournal(settings["journal_dir"])
    orchestrator = StageOrchestrator(
        host,
        advisor=advisor,
        recipe=recipe,
        journal=journal,
        summary=summary,
    )
    orchestrator.subscribe(ConsoleReporter(console))

    lock: contextlib.AbstractContextManager[Any] = (
        contextlib.nullcontext() if dry_run else RunLock(settings["lock_file"])
    )
    try:
        with lock, _abort_on_signals(orchestrator.request_abort):
            result = orchestrator.run(config)
    finally:
        advisor.close()

    if result.success and not dry_run:
        store.remember_paths(config)
    if isinstance(host, DryRunHost):
        _render_plan(console, host)
    console.print(summary.as_panel())
    if result.success:
        console.print("[bold green]Secure stack provisioned.[/]")
    else:
        if result.failed_stage is not None:
            record = result.record(result.failed_stage)
            reason = f"Stage {record.name.value} failed: {escape(record.last_error or 'unknown error')}."
        else:
            reason = "Run aborted."
        rollback = "completed" if result.rollback is None or result.rollback.ok else "attempted with errors"
        console.print(f"[bold red]{reason}[/] Rollback {rollback}.")
        if journal is not None and journal.path is not None:
            console.print(f"[dim]Run journal: {journal.path}[/]")
    return result.exit_code


def install_startup_unit(args: argparse.Namespace, console: Console) -> int:
    dry_run = bool(args.dry_run)
    if not dry_run:
        _require_root("install-unit")
    summary = RunSummary()
    host = DryRunHost(summary) if dry_run else Host(summary)
    path = install_unit(host)
    if isinstance(host, DryRunHost):
        _render_plan(console, host)
    console.print(f"[green]Startup unit installed:[/] {path}")
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(list(sys.argv[1:] if argv is None else argv))
    console = Console(highlight=False)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file, console=console)

    exit_code = 0
    try:
        if args.command == "install-unit":
            exit_code = install_startup_unit(args, console)
        else:
            exit_code = provision(args, console)
    except (PrivilegeError, CredentialsMissingError, RunLockError) as exc:
        console.print(f"[bold red]Error:[/] {escape(str(exc))}")
        exit_code = 1
    except SecureStackError as exc:
        logger.debug("Fatal error", exc_info=exc)
        console.print(f"[bold red]Fatal:[/] {exc.__class__.__name__}: {escape(str(exc))}")
        exit_code = 1
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted before provisioning started.[/]")
        exit_code = 1
    sys.exit(exit_code)
