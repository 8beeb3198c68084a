"""JSON-lines journal of provisioning runs."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Iterable, Mapping

logger = logging.getLogger(__name__)


class RunJournal:
    """Append ``run``, ``stage`` and ``rollback`` entries to one file per run."""

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self.path: Path | None = None
        self._file: IO[str] | None = None

    def start(self, metadata: Mapping[str, Any]) -> Path | None:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            path = self.directory / f"{timestamp}.jsonl"
            self._file = path.open("a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Run journal disabled: %s", exc)
            return None
        self.path = path
        entry = {"type": "run", "timestamp": timestamp}
        entry.update(metadata)
        self.write(entry)
        return path

    def write(self, entry: Mapping[str, Any]) -> None:
        if self._file is None:
            return
        json.dump(entry, self._file, default=str)
        self._file.write("\n")
        self._file.flush()

    def record(self, kind: str, payload: Mapping[str, Any]) -> None:
        entry: dict[str, Any] = {"type": kind}
        entry.update(payload)
        self.write(entry)

    def close(self) -> None:
        if self._file is not None:
            try:
                self._file.flush()
            finally:
                self._file.close()
        self._file = None


@dataclass(slots=True)
class JournalEntries:
    path: Path
    entries: list[dict[str, Any]]

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [entry for entry in self.entries if entry.get("type") == kind]


def load_journal(path: Path) -> JournalEntries:
    entries: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed journal line in %s", path)
    return JournalEntries(path=path, entries=entries)


def latest_journal(directory: Path | str) -> JournalEntries | None:
    candidates: Iterable[Path] = sorted(Path(directory).glob("*.jsonl"))
    paths = list(candidates)
    if not paths:
        return None
    return load_journal(paths[-1])


__all__ = ["JournalEntries", "RunJournal", "latest_journal", "load_journal"]
