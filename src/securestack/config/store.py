"""Load and persist the credentials file that seeds every run."""
from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from json import JSONDecodeError
from pathlib import Path
from typing import Any, Callable, Mapping

from ..errors import CredentialsMissingError
from . import defaults
from .paths import LayerPaths, PathRule, resolve_layer_paths

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdvisoryCredentials:
    api_key: str
    api_url: str

    def __repr__(self) -> str:
        return f"AdvisoryCredentials(api_key='{mask_secret(self.api_key)}', api_url={self.api_url!r})"


@dataclass(frozen=True)
class RunConfig:
    """Immutable inputs for one provisioning run."""

    credentials: AdvisoryCredentials
    paths: LayerPaths = field(default_factory=LayerPaths)
    tailscale_auth_key: str | None = None
    source: Path | None = None

    def __repr__(self) -> str:
        auth = mask_secret(self.tailscale_auth_key) if self.tailscale_auth_key else None
        return (
            f"RunConfig(credentials={self.credentials!r}, paths={self.paths!r}, "
            f"tailscale_auth_key={auth!r}, source={self.source!r})"
        )


def mask_secret(value: str | None) -> str:
    if not value:
        return ""
    return f"{value[:4]}..."


class ConfigStore:
    """Read the JSON credentials file and remember discovered paths."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        matcher: Callable[[PathRule, Path], bool] | None = None,
    ) -> None:
        self._environ = os.environ if environ is None else environ
        if path is None and self._environ.get(defaults.CONFIG_ENV_VAR):
            path = self._environ[defaults.CONFIG_ENV_VAR]
        self.path = Path(path).expanduser() if path else defaults.default_config_file()
        self._matcher = matcher

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            raise CredentialsMissingError(
                f"Credentials file {self.path} not found; create it with "
                "gemini_api_key and gemini_api_url"
            )
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except JSONDecodeError as exc:
            logger.warning("Invalid credentials file %s: %s", self.path, exc)
            backup = self.path.with_suffix(self.path.suffix + ".bak")
            try:
                shutil.move(self.path, backup)
            except OSError as backup_err:
                logger.warning("Failed to back up invalid credentials file: %s", backup_err)
            raise CredentialsMissingError(f"Credentials file {self.path} is not valid JSON") from exc
        if not isinstance(data, dict):
            raise CredentialsMissingError(f"Credentials file {self.path} must hold a JSON object")
        return data

    def load(self) -> RunConfig:
        """Return the run's configuration, resolving layer paths."""

        data = self._read()
        api_key = str(data.get("gemini_api_key") or "").strip()
        api_url = str(data.get("gemini_api_url") or "").strip()
        if not api_key or not api_url:
            raise CredentialsMissingError(
                f"Credentials file {self.path} lacks gemini_api_key or gemini_api_url"
            )
        auth_key = str(data.get("tailscale_auth_key") or "").strip() or None
        remembered = data.get("paths")
        paths = resolve_layer_paths(
            remembered if isinstance(remembered, dict) else None,
            environ=self._environ,
            matcher=self._matcher,
        )
        for key, source in paths.sources.items():
            logger.debug("Path %s resolved from %s", key, source)
        return RunConfig(
            credentials=AdvisoryCredentials(api_key=api_key, api_url=api_url),
            paths=paths,
            tailscale_auth_key=auth_key,
            source=self.path,
        )

    def remember_paths(self, config: RunConfig) -> bool:
        """Persist *config*'s resolved paths alongside the credentials."""

        try:
            data = self._read()
        except CredentialsMissingError:
            return False
        data["paths"] = config.paths.as_dict()
        return self.save(data)

    def save(self, data: Mapping[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(dict(data), handle, indent=4)
            os.chmod(self.path, 0o600)
            return True
        except OSError as exc:
            logger.error("Error saving credentials file: %s", exc)
            return False


__all__ = ["AdvisoryCredentials", "ConfigStore", "RunConfig", "mask_secret"]
