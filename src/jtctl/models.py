"""Domain types shared by the lifecycle engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from packaging.version import InvalidVersion, Version

from .config import AppConfig, ComponentConfig


class Component(str, Enum):
    """Managed runtimes."""

    JAVA = "java"
    APP_SERVER = "app-server"

    @property
    def label(self) -> str:
        """Return a human-friendly name."""
        return "Java" if self is Component.JAVA else "Tomcat"

    @property
    def env_var(self) -> str:
        """Return the home variable exported for this component."""
        return "JAVA_HOME" if self is Component.JAVA else "CATALINA_HOME"


class LifecycleState(str, Enum):
    """States a component moves through during a transition."""

    ABSENT = "absent"
    INSTALLED = "installed"
    BACKING_UP = "backing-up"
    UPGRADING = "upgrading"
    ROLLED_BACK = "rolled-back"
    REMOVED = "removed"


@dataclass(frozen=True, slots=True)
class ComponentLayout:
    """Where a component lives on disk and how its directories are named."""

    component: Component
    prefix: str
    install_root: Path
    backup_root: Path
    extracted_glob: str

    @classmethod
    def from_config(cls, component: Component, config: AppConfig) -> ComponentLayout:
        """Build the layout for *component* from resolved configuration."""
        section: ComponentConfig = config.java if component is Component.JAVA else config.tomcat
        return cls(
            component=component,
            prefix=section.prefix,
            install_root=config.install_root,
            backup_root=section.backup_root,
            extracted_glob=section.extracted_glob,
        )

    @property
    def pattern(self) -> str:
        """Glob matching canonical and backup directory names."""
        return f"{self.prefix}-*"

    def dir_name(self, version: str) -> str:
        """Return ``<prefix>-<version>``."""
        return f"{self.prefix}-{version}"

    def install_path(self, version: str) -> Path:
        """Return the canonical install path for *version*."""
        return self.install_root / self.dir_name(version)

    def backup_path(self, version: str) -> Path:
        """Return the backup slot path for *version*."""
        return self.backup_root / self.dir_name(version)

    def version_of(self, name: str) -> str | None:
        """Return the version encoded in directory *name*, if it matches."""
        marker = f"{self.prefix}-"
        if not name.startswith(marker):
            return None
        version = name[len(marker) :]
        return version or None


@dataclass(frozen=True, slots=True)
class InstalledComponent:
    """The single live install of a component."""

    component: Component
    version: str
    install_path: Path


@dataclass(frozen=True, slots=True)
class Backup:
    """The retained copy of a previous install."""

    component: Component
    version: str
    backup_path: Path


@dataclass(frozen=True, slots=True)
class DesiredState:
    """Target versions and download locations for one operation."""

    java_version: str
    java_artifact_url: str
    tomcat_version: str
    tomcat_artifact_url: str

    def version_for(self, component: Component) -> str:
        """Return the desired version of *component*."""
        return self.java_version if component is Component.JAVA else self.tomcat_version

    def url_for(self, component: Component) -> str:
        """Return the artifact URL of *component*."""
        if component is Component.JAVA:
            return self.java_artifact_url
        return self.tomcat_artifact_url


@dataclass(slots=True)
class TransitionResult:
    """Outcome of a single lifecycle operation."""

    component: Component
    state: LifecycleState
    version: str | None = None
    previous_version: str | None = None
    backup: Backup | None = None
    steps: list[tuple[str, str]] = field(default_factory=list)

    def step(self, name: str, detail: str = "") -> None:
        """Record that *name* completed."""
        self.steps.append((name, detail))


def sort_versions(versions: list[str]) -> list[str]:
    """Return *versions* sorted using packaging where possible."""
    parsed: list[tuple[Version, str]] = []
    invalid: list[str] = []
    for version in versions:
        try:
            parsed.append((Version(version), version))
        except InvalidVersion:
            invalid.append(version)
    parsed.sort()
    invalid.sort()
    return [item for _, item in parsed] + invalid


__all__ = [
    "Backup",
    "Component",
    "ComponentLayout",
    "DesiredState",
    "InstalledComponent",
    "LifecycleState",
    "TransitionResult",
    "sort_versions",
]
