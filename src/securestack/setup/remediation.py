"""Client for the external advisory service used during remediation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from ..config.store import AdvisoryCredentials
from ..errors import AdvisoryUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0
MAX_PROMPT_CHARS = 2000
MAX_ERROR_CHARS = 1200


@dataclass
class RemediationAttempt:
    """One consultation of the advisory service for a failed stage."""

    stage: str
    action: str
    error: str
    suggestion: str | None = None
    applied: bool = False
    outcome: str = "pending"

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "action": self.action,
            "error": self.error,
            "suggestion": self.suggestion,
            "applied": self.applied,
            "outcome": self.outcome,
        }


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def build_prompt(action: str, error_text: str, *, limit: int = MAX_PROMPT_CHARS) -> str:
    """Bounded prompt describing a failed action and its error."""

    error = _clip(error_text, min(MAX_ERROR_CHARS, limit // 2))
    prompt = (
        f"An error occurred while provisioning a host: '{error}'. "
        f"The action that caused the error was: '{_clip(action, 300)}'. "
        "Reply with a single shell command that fixes the error and nothing else."
    )
    return _clip(prompt, limit)


class RemediationAdvisor:
    """Ask the advisory endpoint for corrective actions and generated rules.

    Transport failures, HTTP errors, malformed bodies and empty responses
    all mean "no suggestion"; nothing here is fatal to the run.
    """

    def __init__(
        self,
        credentials: AdvisoryCredentials,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_prompt_chars: int = MAX_PROMPT_CHARS,
    ) -> None:
        self._credentials = credentials
        self._session = session or requests.Session()
        self.timeout = timeout
        self.max_prompt_chars = max_prompt_chars

    def query(self, prompt: str) -> str:
        """POST *prompt* and return the non-empty ``response`` text."""

        try:
            response = self._session.post(
                self._credentials.api_url,
                json={"prompt": prompt[: self.max_prompt_chars]},
                headers={"Authorization": f"Bearer {self._credentials.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as exc:
            raise AdvisoryUnavailableError(f"advisory service unreachable: {exc}") from exc
        except ValueError as exc:
            raise AdvisoryUnavailableError("advisory service returned malformed JSON") from exc
        if not isinstance(body, dict):
            raise AdvisoryUnavailableError("advisory response is not a JSON object")
        text = body.get("response")
        if not isinstance(text, str) or not text.strip():
            raise AdvisoryUnavailableError("advisory response is empty")
        return text.strip()

    def generate(self, prompt: str) -> str | None:
        try:
            return self.query(prompt)
        except AdvisoryUnavailableError as exc:
            logger.warning("Advisory service gave no answer: %s", exc)
            return None

    def suggest(self, action: str, error_text: str) -> str | None:
        """Return a suggested corrective action, or ``None``."""

        prompt = build_prompt(action, error_text, limit=self.max_prompt_chars)
        suggestion = self.generate(prompt)
        if suggestion is not None:
            logger.info("Advisory suggestion for %r: %s", _clip(action, 80), _clip(suggestion, 200))
        return suggestion

    def close(self) -> None:
        self._session.close()


__all__ = ["RemediationAdvisor", "RemediationAttempt", "build_prompt"]
