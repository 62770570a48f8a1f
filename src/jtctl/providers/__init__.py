"""Provider interfaces for jtctl."""
from __future__ import annotations

from .accounts import AccountError, ServiceAccountManager, ServiceAccountSpec
from .environment import EnvironmentFileError, EnvironmentVariableManager
from .fetcher import ArtifactFetcher
from .systemd import ServiceUnitManager, SystemdError

__all__ = [
    "AccountError",
    "ArtifactFetcher",
    "EnvironmentFileError",
    "EnvironmentVariableManager",
    "ServiceAccountManager",
    "ServiceAccountSpec",
    "ServiceUnitManager",
    "SystemdError",
]
