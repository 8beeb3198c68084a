"""Error taxonomy shared by the provisioning pipeline."""
from __future__ import annotations

from typing import Sequence


class SecureStackError(Exception):
    """Base class for every error raised by securestack."""


class DependencyMissingError(SecureStackError):
    """A required tool, daemon or directory is absent from the host."""


class ConfigurationError(SecureStackError):
    """A layer failed to apply for a reason a corrective command may fix."""


class CommandError(ConfigurationError):
    """A host command exited with a non-zero status."""

    def __init__(
        self,
        argv: Sequence[str],
        exit_code: int | None,
        stderr: str | None = None,
        message: str | None = None,
    ) -> None:
        self.argv = tuple(str(part) for part in argv)
        self.exit_code = exit_code
        self.stderr = (stderr or "").strip()
        if message is None:
            message = f"'{' '.join(self.argv)}' exited with {exit_code}"
            if self.stderr:
                message = f"{message}: {self.stderr}"
        super().__init__(message)

    @property
    def command(self) -> str:
        return " ".join(self.argv)


class CommandTimeoutError(CommandError):
    """A host command did not finish within its bounded wait."""

    def __init__(self, argv: Sequence[str], timeout: float | None) -> None:
        self.timeout = timeout
        joined = " ".join(str(part) for part in argv)
        super().__init__(argv, None, message=f"'{joined}' timed out after {timeout}s")


class ValidationError(SecureStackError):
    """A single generated rule or fragment failed validation."""


class AllocationError(SecureStackError):
    """The port space could not satisfy an allocation request."""


class AdvisoryUnavailableError(SecureStackError):
    """The advisory service was unreachable or returned nothing usable."""


class CredentialsMissingError(SecureStackError):
    """The credentials file is absent or incomplete."""


class PrivilegeError(SecureStackError):
    """The process lacks the privileges needed to provision the host."""


class RunLockError(SecureStackError):
    """Another provisioning run holds the run lock."""


_FATAL: tuple[type[BaseException], ...] = (
    DependencyMissingError,
    AllocationError,
    PermissionError,
)


def is_recoverable(exc: BaseException) -> bool:
    """Return ``True`` when *exc* is eligible for the remediation loop."""

    if isinstance(exc, _FATAL):
        return False
    return isinstance(exc, ConfigurationError)


__all__ = [
    "AdvisoryUnavailableError",
    "AllocationError",
    "CommandError",
    "CommandTimeoutError",
    "ConfigurationError",
    "CredentialsMissingError",
    "DependencyMissingError",
    "PrivilegeError",
    "RunLockError",
    "SecureStackError",
    "ValidationError",
    "is_recoverable",
]
