"""Host interaction: commands, file writes and service lifecycle calls."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Iterable, Sequence

from ..errors import CommandError, CommandTimeoutError, DependencyMissingError
from ..setup.run_summary import RunSummary

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

SERVICE_VERBS = frozenset({"enable", "disable", "start", "stop", "restart", "reset-failed"})


def _redact(argv: Sequence[str], secrets: Iterable[str]) -> list[str]:
    hidden = [secret for secret in secrets if secret]
    redacted: list[str] = []
    for part in argv:
        text = str(part)
        for secret in hidden:
            text = text.replace(secret, "****")
        redacted.append(text)
    return redacted


def is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return bool(geteuid is not None and geteuid() == 0)


class Host:
    """Apply changes to the local machine.

    Every command runs without a shell and is bounded by a timeout; the
    outcome is recorded in the run summary.
    """

    dry_run = False

    def __init__(
        self,
        summary: RunSummary | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        env: dict[str, str] | None = None,
    ) -> None:
        self.summary = summary or RunSummary()
        self.timeout = timeout
        self._env = env

    # --- commands -----------------------------------------------------
    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        secrets: Iterable[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        cmd = [str(part) for part in argv]
        shown = _redact(cmd, secrets)
        limit = self.timeout if timeout is None else timeout
        record = self.summary.begin_command(shown)
        logger.debug("Executing command: %s", " ".join(shown))
        start = time.perf_counter()
        try:
            result = subprocess.run(
                cmd,
                env=self._env,
                timeout=limit,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except subprocess.TimeoutExpired as exc:
            record.finalize(exit_code=None, stderr=str(exc), duration=time.perf_counter() - start)
            logger.error("Command timed out: %s", " ".join(shown))
            raise CommandTimeoutError(shown, limit) from exc
        except FileNotFoundError as exc:
            record.finalize(exit_code=127, stderr=str(exc), duration=time.perf_counter() - start)
            raise DependencyMissingError(f"Executable '{cmd[0]}' not found") from exc
        duration = time.perf_counter() - start
        record.finalize(exit_code=result.returncode, stderr=result.stderr, duration=duration)
        if result.returncode != 0:
            raise CommandError(shown, result.returncode, _redact([result.stderr or ""], secrets)[0])
        return result

    def service(self, name: str, verb: str, *, timeout: float | None = None) -> None:
        if verb not in SERVICE_VERBS:
            raise ValueError(f"Unsupported service verb '{verb}'")
        self.run(["systemctl", verb, name], timeout=timeout)

    def which(self, executable: str) -> str | None:
        return shutil.which(executable)

    def require(self, executable: str, layer: str) -> str:
        found = self.which(executable)
        if not found:
            raise DependencyMissingError(
                f"{layer} layer requires '{executable}', which is not installed"
            )
        return found

    # --- filesystem ---------------------------------------------------
    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def is_dir(self, path: Path) -> bool:
        return Path(path).is_dir()

    def read_text(self, path: Path) -> str | None:
        try:
            return Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def write_text(self, path: Path, content: str, *, mode: int | None = None) -> None:
        target = Path(path)
        tmp = target.with_name(f".{target.name}.securestack-tmp")
        tmp.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(tmp, mode)
        os.replace(tmp, target)
        logger.debug("Wrote %s", target)

    def remove(self, path: Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        logger.debug("Removed %s", path)
        return True

    def make_dirs(self, path: Path) -> bool:
        target = Path(path)
        if target.is_dir():
            return False
        target.mkdir(parents=True, exist_ok=True)
        return True

    def remove_dir(self, path: Path) -> bool:
        """Remove *path* only when it is empty."""

        try:
            Path(path).rmdir()
        except (FileNotFoundError, OSError):
            return False
        return True


class DryRunHost(Host):
    """Record intended changes without applying any of them."""

    dry_run = True

    def __init__(self, summary: RunSummary | None = None, **kwargs) -> None:
        super().__init__(summary, **kwargs)
        self.planned: list[str] = []

    def _plan(self, action: str) -> None:
        self.planned.append(action)
        logger.info("[dry-run] %s", action)

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        secrets: Iterable[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        shown = _redact([str(part) for part in argv], secrets)
        self.summary.begin_command(shown, dry_run=True)
        self._plan(" ".join(shown))
        return subprocess.CompletedProcess(shown, 0, "", "")

    def write_text(self, path: Path, content: str, *, mode: int | None = None) -> None:
        lines = content.count("\n") + (0 if content.endswith("\n") else 1)
        self._plan(f"write {path} ({lines} lines)")

    def remove(self, path: Path) -> bool:
        if not Path(path).exists():
            return False
        self._plan(f"remove {path}")
        return True

    def make_dirs(self, path: Path) -> bool:
        if Path(path).is_dir():
            return False
        self._plan(f"mkdir -p {path}")
        return True

    def remove_dir(self, path: Path) -> bool:
        self._plan(f"rmdir {path}")
        return True


__all__ = ["DEFAULT_TIMEOUT", "DryRunHost", "Host", "SERVICE_VERBS", "is_root"]
