from __future__ import annotations

import pytest
import requests

from securestack.config import AdvisoryCredentials
from securestack.errors import AdvisoryUnavailableError
from securestack.setup import remediation
from securestack.setup.remediation import MAX_PROMPT_CHARS, RemediationAdvisor, build_prompt


class _Response:
    def __init__(self, payload=None, *, status: int = 200, invalid: bool = False) -> None:
        self._payload = payload
        self.status_code = status
        self._invalid = invalid

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._invalid:
            raise ValueError("not json")
        return self._payload


class _Session:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response

    def close(self) -> None:
        return None


CREDS = AdvisoryCredentials(api_key="secret-key", api_url="https://advisor.example/v1")


def test_suggest_posts_prompt_with_bearer_auth(monkeypatch) -> None:
    session = _Session(_Response({"response": "  sudo systemctl restart tor \n"}))
    monkeypatch.setattr(remediation.requests, "Session", lambda: session)
    advisor = RemediationAdvisor(CREDS, timeout=5)

    suggestion = advisor.suggest("systemctl restart tor", "Job for tor.service failed")

    assert suggestion == "sudo systemctl restart tor"
    call = session.calls[0]
    assert call["url"] == "https://advisor.example/v1"
    assert call["headers"] == {"Authorization": "Bearer secret-key"}
    assert call["timeout"] == 5
    assert "systemctl restart tor" in call["json"]["prompt"]
    assert "Job for tor.service failed" in call["json"]["prompt"]


@pytest.mark.parametrize(
    "session",
    [
        _Session(error=requests.ConnectionError("refused")),
        _Session(error=requests.Timeout("slow")),
        _Session(_Response(status=500)),
        _Session(_Response(invalid=True)),
        _Session(_Response(["not", "an", "object"])),
        _Session(_Response({"response": ""})),
        _Session(_Response({"other": "field"})),
    ],
)
def test_failures_mean_no_suggestion(session) -> None:
    advisor = RemediationAdvisor(CREDS, session=session)
    assert advisor.suggest("ufw enable", "error") is None
    with pytest.raises(AdvisoryUnavailableError):
        advisor.query("prompt")


def test_prompt_is_bounded() -> None:
    prompt = build_prompt("systemctl restart tor", "x" * 50_000)
    assert len(prompt) <= MAX_PROMPT_CHARS
    assert "systemctl restart tor" in prompt
