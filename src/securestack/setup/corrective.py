"""Allow-listed corrective actions derived from advisory suggestions.

Advisory output is untrusted text. A suggestion is only acted upon when one
of its lines parses into a :class:`CorrectiveAction` from the catalog below;
the executed argv is always rebuilt from the parsed parameters.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from ..config import defaults
from ..config.paths import LayerPaths
from ..errors import ValidationError
from ..layers.firewall import parse_rule

logger = logging.getLogger(__name__)

SERVICE_ACTIONS = frozenset({"restart", "start", "enable", "reset-failed"})
MAX_CANDIDATE_LINES = 20

_SHELL_META = re.compile(r"[;&|`$<>(){}\\]")
_FENCE_RE = re.compile(r"```[a-zA-Z]*\n(.*?)```", re.DOTALL)
_PROMPT_PREFIX = re.compile(r"^(?:\$|#)\s+")


@dataclass(frozen=True, slots=True)
class CorrectiveAction:
    """A parameterized host command the remediation loop may run."""

    kind: str
    argv: tuple[str, ...]
    description: str

    def __str__(self) -> str:
        return " ".join(self.argv)


def candidate_lines(suggestion: str) -> list[str]:
    """Extract command-looking lines, preferring fenced code blocks."""

    blocks = _FENCE_RE.findall(suggestion)
    text = "\n".join(blocks) if blocks else suggestion
    lines: list[str] = []
    for raw in text.splitlines():
        line = raw.strip().strip("`").strip()
        line = _PROMPT_PREFIX.sub("", line)
        if not line or line.startswith("#"):
            continue
        lines.append(line)
        if len(lines) >= MAX_CANDIDATE_LINES:
            break
    return lines


class CorrectiveActionCatalog:
    """Parse suggestion text into one of a small set of safe actions."""

    def __init__(
        self,
        paths: LayerPaths | None = None,
        *,
        services: Mapping[str, str] = defaults.SERVICES,
        hidden_service_dir: Path = defaults.TOR_HIDDEN_SERVICE_DIR,
    ) -> None:
        self.paths = paths or LayerPaths()
        self.services = frozenset(services.values())
        self.hidden_service_dir = Path(hidden_service_dir)

    @property
    def writable_roots(self) -> tuple[Path, ...]:
        return (
            Path(self.paths.overlay_dir),
            Path(self.paths.onion_dir),
            Path(self.paths.garlic_dir),
            self.hidden_service_dir,
        )

    # --- parsing ------------------------------------------------------
    def parse(self, suggestion: str | None) -> CorrectiveAction:
        """Return the first allow-listed action found in *suggestion*."""

        if not suggestion or not suggestion.strip():
            raise ValidationError("empty suggestion")
        reasons: list[str] = []
        for line in candidate_lines(suggestion):
            try:
                return self.parse_command(line)
            except ValidationError as exc:
                reasons.append(f"{line!r}: {exc}")
        if not reasons:
            raise ValidationError("suggestion contains no command")
        raise ValidationError("no allow-listed action in suggestion (" + "; ".join(reasons[:3]) + ")")

    def parse_command(self, line: str) -> CorrectiveAction:
        if _SHELL_META.search(line):
            raise ValidationError("shell syntax is not accepted")
        try:
            tokens = shlex.split(line)
        except ValueError as exc:
            raise ValidationError(f"unparseable command: {exc}") from exc
        if tokens and tokens[0] == "sudo":
            tokens = tokens[1:]
        if not tokens:
            raise ValidationError("empty command")
        program, args = tokens[0], tokens[1:]
        if program == "systemctl":
            return self._service_action(args)
        if program == "ufw":
            return self._firewall_action(args)
        if program == "mkdir":
            return self._mkdir_action(args)
        if program == "chown":
            return self._chown_action(args)
        raise ValidationError(f"'{program}' is not an allow-listed program")

    def _service_action(self, args: Sequence[str]) -> CorrectiveAction:
        if len(args) != 2:
            raise ValidationError("expected 'systemctl <action> <service>'")
        verb, unit = args
        if verb not in SERVICE_ACTIONS:
            raise ValidationError(f"service action '{verb}' is not allowed")
        name = unit[: -len(".service")] if unit.endswith(".service") else unit
        if name not in self.services:
            raise ValidationError(f"'{name}' is not a managed service")
        return CorrectiveAction("service", ("systemctl", verb, name), f"{verb} {name}")

    def _firewall_action(self, args: Sequence[str]) -> CorrectiveAction:
        if not args:
            raise ValidationError("expected a ufw subcommand")
        if list(args) in (["enable"], ["--force", "enable"]):
            return CorrectiveAction("firewall", ("ufw", "--force", "enable"), "enable firewall")
        if list(args) == ["reload"]:
            return CorrectiveAction("firewall", ("ufw", "reload"), "reload firewall")
        if args[0] in {"allow", "limit"}:
            rule = parse_rule(" ".join(args))
            return CorrectiveAction("firewall-rule", ("ufw", *rule.to_args()), f"apply rule {rule}")
        raise ValidationError(f"ufw '{args[0]}' is not allowed")

    def _contained(self, raw: str) -> Path:
        if not raw.startswith("/"):
            raise ValidationError(f"path '{raw}' must be absolute")
        path = Path(os.path.normpath(raw))
        for root in self.writable_roots:
            if path == root or root in path.parents:
                return path
        raise ValidationError(f"path '{raw}' is outside the layer directories")

    def _mkdir_action(self, args: Sequence[str]) -> CorrectiveAction:
        flags = [arg for arg in args if arg.startswith("-")]
        targets = [arg for arg in args if not arg.startswith("-")]
        if any(flag not in {"-p", "--parents"} for flag in flags) or len(targets) != 1:
            raise ValidationError("expected 'mkdir -p <dir>'")
        path = self._contained(targets[0])
        return CorrectiveAction("directory", ("mkdir", "-p", str(path)), f"create {path}")

    def _chown_action(self, args: Sequence[str]) -> CorrectiveAction:
        owner = f"{defaults.TOR_USER}:{defaults.TOR_USER}"
        operands = [arg for arg in args if arg not in {"-R", "--recursive"}]
        if len(operands) != 2 or operands[0] != owner:
            raise ValidationError(f"only '{owner}' ownership may be restored")
        if Path(os.path.normpath(operands[1])) != self.hidden_service_dir:
            raise ValidationError("ownership may only be restored on the hidden service directory")
        return CorrectiveAction(
            "ownership",
            ("chown", "-R", owner, str(self.hidden_service_dir)),
            "restore hidden service ownership",
        )

    # --- execution ----------------------------------------------------
    def apply(self, action: CorrectiveAction, host) -> None:
        logger.info("Applying corrective action: %s", action)
        host.run(list(action.argv))


__all__ = ["CorrectiveAction", "CorrectiveActionCatalog", "SERVICE_ACTIONS", "candidate_lines"]
