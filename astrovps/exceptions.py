"""Custom exceptions for astroneer-vps."""

from __future__ import annotations

from typing import Iterable, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    classification = "Error"

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.remediation = remediation


class ConfigMissing(ManagerError):
    classification = "ConfigMissing"


class ConfigInvalid(ManagerError):
    """Every validation problem is kept so the operator can fix them in one pass."""

    classification = "ConfigInvalid"

    def __init__(self, problems: Iterable[str], remediation: Optional[str] = None) -> None:
        self.problems = list(problems)
        message = "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message, remediation)


class PrerequisiteUnmet(ManagerError):
    classification = "PrerequisiteUnmet"


class ResourceConflict(ManagerError):
    classification = "ResourceConflict"


class Timeout(ManagerError):
    classification = "Timeout"


class RemoteCommandFailed(ManagerError):
    classification = "RemoteCommandFailed"


class TransferFailed(ManagerError):
    classification = "TransferFailed"


class CommandFailed(ManagerError):
    """A host-side command exited non-zero."""

    classification = "CommandFailed"


class LockBusy(ManagerError):
    classification = "LockBusy"
