"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from jtctl.config import AppConfig, load_config
from jtctl.errors import FetchError
from jtctl.models import Component, ComponentLayout
from jtctl.orchestrator import UpgradeOrchestrator
from jtctl.providers.accounts import AccountError, ServiceAccountManager
from jtctl.providers.environment import EnvironmentFileError, EnvironmentVariableManager
from jtctl.providers.systemd import ServiceUnitManager, SystemdError


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def config_overrides(tmp_path: Path) -> dict[str, object]:
    """Return overrides that sandbox every host path under *tmp_path*."""
    return {
        "install_root": str(tmp_path / "opt"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "staging_dir": str(tmp_path / "staging"),
        "desired_state_file": str(tmp_path / "desired.json"),
        "java": {"backup_root": str(tmp_path / "opt" / "java_backups")},
        "tomcat": {"backup_root": str(tmp_path / "opt" / "tomcat_backups")},
        "service": {"manage_account": False},
        "environment": {
            "system_file": str(tmp_path / "etc" / "environment"),
            "profile_file": str(tmp_path / "etc" / "profile"),
            "shell_rc_files": [str(tmp_path / "home" / ".bashrc")],
        },
        "systemd": {"unit_dir": str(tmp_path / "systemd")},
    }


def write_desired(
    path: Path,
    *,
    java: str,
    tomcat: str,
    java_url: str | None = None,
    tomcat_url: str | None = None,
) -> Path:
    """Write a descriptor in the ``mave.dependencies`` shape."""
    payload = {
        "mave": {
            "dependencies": {
                "java": {
                    "version": java,
                    "packageUrlUnix": java_url or f"https://downloads.invalid/jdk-{java}.tar.gz",
                },
                "tomcat": {
                    "version": tomcat,
                    "packageUrlUnix": tomcat_url
                    or f"https://downloads.invalid/apache-tomcat-{tomcat}.tar.gz",
                },
            }
        }
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class FakeFetcher:
    """Stand-in for :class:`ArtifactFetcher` that fabricates distributions."""

    def __init__(self) -> None:
        self.calls: list[tuple[Component, str, str]] = []
        self.fail_urls: set[str] = set()

    def fetch(self, layout: ComponentLayout, version: str, url: str, destination: Path) -> Path:
        self.calls.append((layout.component, version, url))
        if url in self.fail_urls:
            raise FetchError(f"Download failed for {url}: HTTP 404")
        if destination.exists():
            raise FetchError(f"Install destination already exists: {destination}")
        (destination / "bin").mkdir(parents=True)
        (destination / "release").write_text(f"{layout.component.value} {version}\n")
        if layout.component is Component.APP_SERVER:
            for script in ("catalina.sh", "shutdown.sh"):
                (destination / "bin" / script).write_text("#!/bin/sh\nexit 0\n")
        return destination


@dataclass
class SystemctlRecorder:
    """Record systemctl invocations and fail selected ones."""

    calls: list[tuple[str, str | None]] = field(default_factory=list)
    fail_on: set[tuple[str, str | None]] = field(default_factory=set)

    def invoke(
        self,
        manager: ServiceUnitManager,
        command: str,
        unit: str | None,
        check: bool,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append((command, unit))
        if (command, unit) in self.fail_on:
            if check:
                raise SystemdError(f"{manager.systemctl_bin} {command} failed (exit 1): boom")
            return subprocess.CompletedProcess([command], returncode=1, stdout="", stderr="boom")
        return subprocess.CompletedProcess([command], returncode=0, stdout="active\n", stderr="")


@pytest.fixture
def systemctl(monkeypatch: pytest.MonkeyPatch) -> SystemctlRecorder:
    """Replace systemctl calls on every :class:`ServiceUnitManager`."""
    recorder = SystemctlRecorder()

    def fake_systemctl(
        self: ServiceUnitManager,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        return recorder.invoke(self, command, unit, check)

    monkeypatch.setattr(ServiceUnitManager, "_systemctl", fake_systemctl)
    return recorder


def fail_ownership_for(monkeypatch: pytest.MonkeyPatch, directory_name: str) -> None:
    """Make ownership changes on *directory_name* raise :class:`AccountError`."""
    original = ServiceAccountManager.apply_ownership

    def apply_ownership(self: ServiceAccountManager, root: Path) -> None:
        if root.name == directory_name:
            raise AccountError(f"Failed to set ownership on {root}: Operation not permitted")
        original(self, root)

    monkeypatch.setattr(ServiceAccountManager, "apply_ownership", apply_ownership)


def fail_environment_for(monkeypatch: pytest.MonkeyPatch, directory_name: str) -> None:
    """Make binding any variable to *directory_name* raise :class:`EnvironmentFileError`."""
    original = EnvironmentVariableManager.apply

    def apply(
        self: EnvironmentVariableManager,
        name: str,
        value: str,
        *,
        path_entry: bool = False,
    ) -> list[Path]:
        if Path(value).name == directory_name:
            raise EnvironmentFileError(f"Failed to update {self.config.system_file}: read-only")
        return original(self, name, value, path_entry=path_entry)

    monkeypatch.setattr(EnvironmentVariableManager, "apply", apply)


@dataclass
class Host:
    """A sandboxed host wired with fakes for network and systemctl."""

    root: Path
    config: AppConfig
    orchestrator: UpgradeOrchestrator
    fetcher: FakeFetcher
    systemctl: SystemctlRecorder

    def java_dir(self, version: str) -> Path:
        return self.config.install_root / f"openjdk-{version}"

    def tomcat_dir(self, version: str) -> Path:
        return self.config.install_root / f"tomcat-{version}"

    def java_backups(self) -> list[str]:
        return _names(self.config.java.backup_root)

    def tomcat_backups(self) -> list[str]:
        return _names(self.config.tomcat.backup_root)

    def installs(self) -> list[str]:
        return [
            name
            for name in _names(self.config.install_root)
            if name.startswith(("openjdk-", "tomcat-"))
        ]

    def units(self) -> list[str]:
        return _names(self.config.systemd.unit_dir)

    def desire(self, java: str, tomcat: str, **urls: str) -> Path:
        return write_desired(self.config.desired_state_file, java=java, tomcat=tomcat, **urls)


def _names(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(path.name for path in directory.iterdir() if not path.name.startswith("."))


@pytest.fixture
def host(tmp_path: Path, systemctl: SystemctlRecorder) -> Host:
    """Return an orchestrator operating entirely inside *tmp_path*."""
    (tmp_path / "home").mkdir()
    (tmp_path / "home" / ".bashrc").write_text("alias ll='ls -l'\n", encoding="utf-8")
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides=config_overrides(tmp_path),
    )
    orchestrator = UpgradeOrchestrator.from_config(config)
    fetcher = FakeFetcher()
    orchestrator.java.fetcher = fetcher  # type: ignore[assignment]
    orchestrator.app_server.fetcher = fetcher  # type: ignore[assignment]
    return Host(
        root=tmp_path,
        config=config,
        orchestrator=orchestrator,
        fetcher=fetcher,
        systemctl=systemctl,
    )
