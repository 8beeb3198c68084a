from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Iterable, Sequence

import pytest

from securestack.config import AdvisoryCredentials, LayerPaths, RunConfig
from securestack.config import defaults
from securestack.errors import CommandError
from securestack.setup.run_summary import RunSummary
from securestack.utils.host import Host

ALL_EXECUTABLES = ("tailscale", "tor", "i2prouter", "ufw", "systemctl", "chown")


class RecordingHost(Host):
    """In-memory host: records commands and keeps files in a dict."""

    def __init__(
        self,
        *,
        executables: Iterable[str] = ALL_EXECUTABLES,
        dirs: Iterable[Path | str] = (),
    ) -> None:
        super().__init__(RunSummary())
        self.commands: list[list[str]] = []
        self.files: dict[Path, str] = {}
        self.dirs: set[Path] = {Path(d) for d in dirs}
        self.executables = set(executables)
        self._failures: list[tuple[tuple[str, ...], list[int]]] = []

    def fail(self, prefix: Sequence[str], times: int = 1) -> None:
        """Make commands starting with *prefix* fail; ``times=-1`` fails forever."""

        self._failures.append((tuple(prefix), [times]))

    def run(self, argv, *, timeout=None, secrets=()):
        cmd = [str(part) for part in argv]
        self.commands.append(cmd)
        for prefix, remaining in self._failures:
            if tuple(cmd[: len(prefix)]) == prefix and remaining[0] != 0:
                remaining[0] -= 1
                raise CommandError(cmd, 1, "simulated failure")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def ran(self, *prefix: str) -> list[list[str]]:
        return [cmd for cmd in self.commands if tuple(cmd[: len(prefix)]) == prefix]

    def which(self, executable: str) -> str | None:
        return f"/usr/bin/{executable}" if executable in self.executables else None

    def exists(self, path: Path) -> bool:
        return Path(path) in self.files or Path(path) in self.dirs

    def is_dir(self, path: Path) -> bool:
        return Path(path) in self.dirs

    def read_text(self, path: Path) -> str | None:
        return self.files.get(Path(path))

    def write_text(self, path: Path, content: str, *, mode: int | None = None) -> None:
        self.files[Path(path)] = content

    def remove(self, path: Path) -> bool:
        return self.files.pop(Path(path), None) is not None

    def make_dirs(self, path: Path) -> bool:
        target = Path(path)
        if target in self.dirs:
            return False
        self.dirs.add(target)
        return True

    def remove_dir(self, path: Path) -> bool:
        target = Path(path)
        occupied = any(target in item.parents for item in [*self.files, *self.dirs])
        if occupied or target not in self.dirs:
            return False
        self.dirs.discard(target)
        return True


class ScriptedAdvisor:
    """Advisor stand-in returning canned suggestions and generated rules."""

    def __init__(self, suggestions: Sequence[str | None] = (), rules: str | None = None) -> None:
        self.suggestions = list(suggestions)
        self.rules = rules
        self.calls: list[tuple[str, str]] = []
        self.prompts: list[str] = []

    def suggest(self, action: str, error_text: str) -> str | None:
        self.calls.append((action, error_text))
        return self.suggestions.pop(0) if self.suggestions else None

    def generate(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        return self.rules

    def close(self) -> None:
        return None


@pytest.fixture()
def host() -> RecordingHost:
    return RecordingHost(dirs=[defaults.I2P_CONFIG_DIR, defaults.TOR_CONFIG_DIR, Path("/etc/ufw")])


@pytest.fixture()
def run_config() -> RunConfig:
    return RunConfig(
        credentials=AdvisoryCredentials(api_key="key-1234567890", api_url="https://advisor.invalid/v1"),
        paths=LayerPaths(),
        tailscale_auth_key="tskey-auth-secret",
    )


def make_context(host, config, stage=None, *, advisor=None, settings=None, allocator=None):
    from securestack.setup.orchestrator import StageContext, StageName
    from securestack.setup.ports import PortAllocator

    merged = dict(defaults.DEFAULT_SETTINGS)
    merged.update(settings or {})
    return StageContext(
        stage=stage or StageName.FIREWALL,
        config=config,
        host=host,
        allocator=allocator or PortAllocator(),
        settings=merged,
        advisor=advisor,
        summary=host.summary,
    )
