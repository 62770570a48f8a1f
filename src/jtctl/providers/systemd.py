"""Systemd unit management for the application-server component."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from jinja2 import TemplateError

from ..errors import ServiceActivationError
from ..models import sort_versions
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


class SystemdError(RuntimeError):
    """Raised when a systemctl invocation fails."""


@dataclass(slots=True)
class ServiceUnitManager:
    """Render, activate and prune ``<prefix>-<version>.service`` units."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    unit_prefix: str = "tomcat"
    service_user: str = "tomcat"
    service_group: str = "tomcat"
    restart_policy: str = "always"
    environment: list[str] = field(default_factory=list)
    dry_run: bool = False

    def unit_name(self, version: str) -> str:
        """Return the systemd unit name for *version*."""
        return f"{self.unit_prefix}-{version}.service"

    def unit_path(self, version: str) -> Path:
        """Return the full path for the unit file of *version*."""
        return self.systemd_dir / self.unit_name(version)

    def installed_versions(self) -> list[str]:
        """Return the versions that currently have a unit file."""
        if not self.systemd_dir.is_dir():
            return []
        marker = f"{self.unit_prefix}-"
        versions = []
        for path in self.systemd_dir.glob(f"{marker}*.service"):
            version = path.name[len(marker) : -len(".service")]
            if version:
                versions.append(version)
        return sort_versions(versions)

    def render(self, version: str, *, java_home: Path, catalina_home: Path) -> str:
        """Return the unit definition for *version* without writing it."""
        return self.templates.render_to_string(
            "systemd/tomcat.service.j2",
            self._context(version, java_home=java_home, catalina_home=catalina_home),
        )

    def write(self, version: str, *, java_home: Path, catalina_home: Path) -> bool:
        """Install the unit file for *version*; return True when it changed."""
        path = self.unit_path(version)
        try:
            changed = self.templates.render_to_path(
                "systemd/tomcat.service.j2",
                path,
                self._context(version, java_home=java_home, catalina_home=catalina_home),
                mode=0o644,
            )
        except (OSError, TemplateError) as exc:
            raise ServiceActivationError(f"Failed to write unit {path}: {exc}") from exc
        if changed:
            LOGGER.info("Wrote unit %s", path)
        return changed

    def activate(self, version: str) -> None:
        """Reload systemd, then enable and (re)start the unit for *version*."""
        unit = self.unit_name(version)
        if not self.unit_path(version).exists():
            raise ServiceActivationError(f"Unit file for {unit} is missing.")
        try:
            self._systemctl("daemon-reload")
            self._systemctl("enable", unit)
            self._systemctl("restart", unit)
        except SystemdError as exc:
            raise ServiceActivationError(f"Failed to activate {unit}: {exc}") from exc

    def prune_others(self, keep_version: str) -> list[str]:
        """Remove every unit except the one for *keep_version*; return removed versions."""
        removed: list[str] = []
        for version in self.installed_versions():
            if version == keep_version:
                continue
            self._stop_and_disable(version)
            self.unit_path(version).unlink(missing_ok=True)
            removed.append(version)
        if removed:
            self._reload_daemon()
        return removed

    def deactivate_all(self) -> list[str]:
        """Stop and disable every installed unit; return the affected versions."""
        versions = self.installed_versions()
        for version in versions:
            self._stop_and_disable(version)
        return versions

    def remove_all(self) -> list[str]:
        """Delete every unit file and reload systemd."""
        versions = self.installed_versions()
        for version in versions:
            self.unit_path(version).unlink(missing_ok=True)
        if versions:
            self._reload_daemon()
        return versions

    def status(self, version: str) -> subprocess.CompletedProcess[str]:
        """Return the ``systemctl is-active`` result for *version*."""
        return self._systemctl("is-active", self.unit_name(version), check=False)

    # ------------------------------------------------------------------
    def _context(self, version: str, *, java_home: Path, catalina_home: Path) -> dict[str, object]:
        return {
            "version": version,
            "service_user": self.service_user,
            "service_group": self.service_group,
            "java_home": str(java_home),
            "catalina_home": str(catalina_home),
            "restart_policy": self.restart_policy,
            "environment": list(self.environment),
        }

    def _stop_and_disable(self, version: str) -> None:
        unit = self.unit_name(version)
        for command in ("stop", "disable"):
            try:
                result = self._systemctl(command, unit, check=False)
            except SystemdError as exc:
                LOGGER.warning("Cannot %s %s: %s", command, unit, exc)
                continue
            if result.returncode != 0:
                LOGGER.debug("systemctl %s %s exited %s", command, unit, result.returncode)

    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check, error_prefix=f"{self.systemctl_bin} {command}")

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        if self.dry_run:
            return subprocess.CompletedProcess(list(args), returncode=0, stdout="", stderr="")
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["ServiceUnitManager", "SystemdError"]
