"""Shared plumbing for layer configurators.

Generated configuration lives between two marker lines so a re-run replaces
the previous block instead of appending a second copy. Files owned entirely
by securestack are regenerated whole. Either way the prior content is
captured and an undo action restoring it is recorded on the stage context.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..setup.orchestrator import StageContext

logger = logging.getLogger(__name__)

SECTION_BEGIN = "# BEGIN securestack generated section"
SECTION_END = "# END securestack generated section"

_SECTION_RE = re.compile(
    rf"\n?^{re.escape(SECTION_BEGIN)}$.*?^{re.escape(SECTION_END)}$\n?",
    re.MULTILINE | re.DOTALL,
)


def has_section(text: str) -> bool:
    return bool(_SECTION_RE.search(text))


def strip_section(text: str) -> str:
    """Remove every generated block from *text*."""

    stripped = _SECTION_RE.sub("\n", text)
    if not stripped.strip():
        return ""
    return stripped.rstrip("\n") + "\n"


def replace_section(text: str | None, body: str) -> str:
    """Return *text* with exactly one generated block holding *body*."""

    base = strip_section(text or "")
    block = f"{SECTION_BEGIN}\n{body.rstrip()}\n{SECTION_END}\n"
    if not base:
        return block
    return f"{base}{block}"


class LayerConfigurator:
    """Apply one layer's configuration; safe to call repeatedly."""

    layer: ClassVar[str] = ""

    def apply(self, context: "StageContext") -> Mapping[str, Any]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(layer={self.layer!r})"


def write_section(context: "StageContext", path: Path, body: str) -> str:
    """Write *body* as the generated block of *path* and register its undo."""

    host = context.host
    previous = host.read_text(path)
    updated = replace_section(previous, body)
    if updated != previous:
        host.write_text(path, updated)

    def _undo() -> None:
        current = host.read_text(path)
        if current is None:
            return
        remaining = strip_section(current)
        if not remaining and previous is None:
            host.remove(path)
        else:
            host.write_text(path, remaining)

    context.record_undo(f"remove generated section from {path}", _undo, key=f"section:{path}")
    return updated


def write_file(context: "StageContext", path: Path, content: str, *, mode: int | None = None) -> None:
    """Regenerate *path* wholesale and register an undo restoring its prior state."""

    host = context.host
    previous = host.read_text(path)
    host.write_text(path, content, mode=mode)

    def _undo() -> None:
        if previous is None:
            host.remove(path)
        else:
            host.write_text(path, previous, mode=mode)

    context.record_undo(f"restore {path}", _undo, key=f"file:{path}")


def ensure_directory(context: "StageContext", path: Path) -> bool:
    """Create *path* when missing; a directory created here is removed on rollback."""

    created = context.host.make_dirs(path)
    if created:
        logger.info("Created %s", path)
        context.record_undo(
            f"remove directory {path}",
            lambda: context.host.remove_dir(path),
            key=f"dir:{path}",
        )
    return created


__all__ = [
    "LayerConfigurator",
    "SECTION_BEGIN",
    "SECTION_END",
    "ensure_directory",
    "has_section",
    "replace_section",
    "strip_section",
    "write_file",
    "write_section",
]
