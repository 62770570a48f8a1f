"""Exception taxonomy shared by the lifecycle engine and the CLI.

Every error raised by a lifecycle transition derives from
:class:`LifecycleError` so callers can distinguish "nothing to do"
(:class:`NoOpError`) from genuine failures with a single ``except`` clause.
Each class carries the exit code the CLI reports for it.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class LifecycleError(RuntimeError):
    """Base class for lifecycle failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ConfigError(LifecycleError):
    """Raised when configuration or the desired-state descriptor is invalid."""

    exit_code = ExitCode.VALIDATION


class StateError(LifecycleError):
    """Raised when persisted state records cannot be read or written."""

    exit_code = ExitCode.ENVIRONMENT


class InconsistentStateError(LifecycleError):
    """Raised when the host holds more than one install of a component."""

    exit_code = ExitCode.ENVIRONMENT


class FetchError(LifecycleError):
    """Raised when downloading or extracting an artifact fails."""


class BackupError(LifecycleError):
    """Raised when a backup cannot be created or restored."""


class NoBackupError(LifecycleError):
    """Raised when a rollback is requested but no backup is retained."""

    exit_code = ExitCode.ENVIRONMENT


class ServiceActivationError(LifecycleError):
    """Raised when the service manager fails to (re)start a unit."""


class InstallError(LifecycleError):
    """Raised when a component cannot be installed or upgraded."""


class NoOpError(LifecycleError):
    """Raised when the desired state is already active."""

    exit_code = ExitCode.OK


class UpgradeError(LifecycleError):
    """Raised when a coordinated upgrade fails.

    ``compensated`` reports whether an earlier component was rolled back, and
    ``compensation_error`` holds the failure of that rollback when it did not
    succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        compensated: bool = False,
        compensation_error: BaseException | None = None,
    ) -> None:
        """Record the compensation outcome alongside the message."""
        super().__init__(message)
        self.compensated = compensated
        self.compensation_error = compensation_error


__all__ = [
    "BackupError",
    "ConfigError",
    "FetchError",
    "InconsistentStateError",
    "InstallError",
    "LifecycleError",
    "NoBackupError",
    "NoOpError",
    "ServiceActivationError",
    "StateError",
    "UpgradeError",
]
