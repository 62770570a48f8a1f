"""Coordinate Java and Tomcat transitions as one compensating transaction.

The application server always runs against the Java home that is installed at
the end of an operation. During an upgrade Java moves first; when the server
step then fails, the Java change is undone with a single rollback attempt and
the server unit is pointed back at the restored Java home.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupStore
from .config import AppConfig
from .desired_state import DesiredStateSource
from .errors import (
    ConfigError,
    LifecycleError,
    NoBackupError,
    NoOpError,
    StateError,
    UpgradeError,
)
from .inspector import InstalledStateInspector
from .lifecycle import ComponentLifecycleManager
from .models import (
    Component,
    ComponentLayout,
    DesiredState,
    LifecycleState,
    TransitionResult,
)
from .providers.accounts import ServiceAccountManager, ServiceAccountSpec
from .providers.environment import EnvironmentVariableManager
from .providers.fetcher import ArtifactFetcher
from .providers.systemd import ServiceUnitManager
from .state import PreviousVersionsRecord, PreviousVersionsStore
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestrationResult:
    """Outcome of an orchestrated operation across both components."""

    operation: str
    transitions: list[TransitionResult] = field(default_factory=list)
    previous: PreviousVersionsRecord | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return True when any component transitioned."""
        return bool(self.transitions)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly summary."""
        return {
            "operation": self.operation,
            "transitions": [
                {
                    "component": item.component.value,
                    "state": item.state.value,
                    "version": item.version,
                    "previous_version": item.previous_version,
                    "backup": str(item.backup.backup_path) if item.backup else None,
                    "steps": [{"name": name, "detail": detail} for name, detail in item.steps],
                }
                for item in self.transitions
            ],
            "previous": self.previous.to_dict() if self.previous else None,
            "warnings": list(self.warnings),
        }


class UpgradeOrchestrator:
    """Sequence the per-component managers for every host-level operation."""

    def __init__(
        self,
        *,
        desired: DesiredStateSource,
        inspector: InstalledStateInspector,
        java: ComponentLifecycleManager,
        app_server: ComponentLifecycleManager,
        previous_versions: PreviousVersionsStore,
    ) -> None:
        """Store the collaborators; nothing is read until an operation runs."""
        self.desired = desired
        self.inspector = inspector
        self.java = java
        self.app_server = app_server
        self.previous_versions = previous_versions

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        desired_state_file: Path | None = None,
        dry_run: bool = False,
    ) -> UpgradeOrchestrator:
        """Wire the default collaborators for *config*."""
        layouts = {
            component: ComponentLayout.from_config(component, config) for component in Component
        }
        inspector = InstalledStateInspector(layouts)
        backups = BackupStore(layouts)
        fetcher = ArtifactFetcher(staging_dir=config.staging_dir, timeout=config.download_timeout)
        environment = EnvironmentVariableManager(config.environment, dry_run=dry_run)
        units = ServiceUnitManager(
            templates=TemplateEngine.with_overrides(config.templates_dir),
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
            unit_prefix=config.tomcat.prefix,
            service_user=config.service.user,
            service_group=config.service.group,
            restart_policy=config.service.restart_policy,
            dry_run=dry_run,
        )
        accounts = ServiceAccountManager(
            ServiceAccountSpec(name=config.service.user, group=config.service.group),
            manage_account=config.service.manage_account,
            dry_run=dry_run,
        )
        java = ComponentLifecycleManager(
            layouts[Component.JAVA],
            inspector=inspector,
            backups=backups,
            fetcher=fetcher,
            environment=environment,
        )
        app_server = ComponentLifecycleManager(
            layouts[Component.APP_SERVER],
            inspector=inspector,
            backups=backups,
            fetcher=fetcher,
            environment=environment,
            units=units,
            accounts=accounts,
        )
        return cls(
            desired=DesiredStateSource(desired_state_file or config.desired_state_file),
            inspector=inspector,
            java=java,
            app_server=app_server,
            previous_versions=PreviousVersionsStore(config.previous_versions_file),
        )

    # Operations ------------------------------------------------------
    def run(self) -> OrchestrationResult:
        """Bring the host to the desired state (alias for :meth:`upgrade`)."""
        return self.upgrade()

    def upgrade(self) -> OrchestrationResult:
        """Upgrade Java, then Tomcat, compensating Java if Tomcat fails.

        Raises :class:`NoOpError` before any mutation when both components
        already match the descriptor.
        """
        desired = self.desired.load()
        current_java = self.inspector.current_version(Component.JAVA)
        current_tomcat = self.inspector.current_version(Component.APP_SERVER)
        if current_java == desired.java_version and current_tomcat == desired.tomcat_version:
            raise NoOpError(
                f"Java {current_java} and Tomcat {current_tomcat} already match the desired state."
            )

        result = OrchestrationResult("upgrade")
        java_home = self._java_home(desired.java_version)
        java_changed = False
        try:
            if current_java is None:
                result.transitions.append(
                    self.java.install(desired.java_version, desired.java_artifact_url)
                )
                java_changed = True
            elif current_java != desired.java_version:
                result.transitions.append(
                    self.java.upgrade(desired.java_version, desired.java_artifact_url)
                )
                java_changed = True
        except LifecycleError as exc:
            raise UpgradeError(f"Java upgrade to {desired.java_version} failed: {exc}") from exc

        try:
            server = self._converge_server(desired, current_tomcat, java_home, java_changed)
        except LifecycleError as exc:
            compensated, compensation_error = self._compensate(java_changed, result)
            message = f"Tomcat upgrade to {desired.tomcat_version} failed: {exc}"
            if compensated:
                message += f"; Java rolled back to {current_java}"
            elif compensation_error is not None:
                message += f"; Java rollback failed: {compensation_error}"
            raise UpgradeError(
                message,
                compensated=compensated,
                compensation_error=compensation_error,
            ) from exc
        if server is not None:
            result.transitions.append(server)

        result.previous = self._record(current_java, current_tomcat, result)
        return result

    def install(self) -> OrchestrationResult:
        """Install both components from the descriptor on a fresh host."""
        desired = self.desired.load()
        current_java = self.inspector.current_version(Component.JAVA)
        current_tomcat = self.inspector.current_version(Component.APP_SERVER)
        if current_java == desired.java_version and current_tomcat == desired.tomcat_version:
            raise NoOpError(
                f"Java {current_java} and Tomcat {current_tomcat} are already installed."
            )

        result = OrchestrationResult("install")
        java_home = self._java_home(desired.java_version)
        if current_java != desired.java_version:
            result.transitions.append(
                self.java.install(desired.java_version, desired.java_artifact_url)
            )
        if current_tomcat != desired.tomcat_version:
            result.transitions.append(
                self.app_server.install(
                    desired.tomcat_version,
                    desired.tomcat_artifact_url,
                    java_home=java_home,
                )
            )
        elif result.transitions:
            result.transitions.append(self.app_server.rebind(java_home))

        result.previous = self._record(desired.java_version, desired.tomcat_version, result)
        return result

    def rollback(self) -> OrchestrationResult:
        """Restore both components from their backups.

        A component without a backup is reported and skipped; when neither
        has one the :class:`NoBackupError` propagates.
        """
        result = OrchestrationResult("rollback")
        try:
            hint = self.previous_versions.read()
        except StateError as exc:
            result.warnings.append(str(exc))
            hint = None

        java_home: Path | None = None
        try:
            restored = self.java.rollback()
        except NoBackupError as exc:
            result.warnings.append(str(exc))
            installed = self.inspector.installed(Component.JAVA)
            java_home = installed.install_path if installed else None
        else:
            result.transitions.append(restored)
            java_home = self._java_home(restored.version or "")

        try:
            result.transitions.append(self.app_server.rollback(java_home=java_home))
        except NoBackupError as exc:
            if not result.transitions:
                raise NoBackupError(
                    "No Java or Tomcat backup is available to roll back to."
                ) from exc
            result.warnings.append(str(exc))
            if java_home is not None and self.inspector.installed(Component.APP_SERVER):
                result.transitions.append(self.app_server.rebind(java_home))

        if hint is not None:
            result.previous = hint
            self._compare_hint(hint, result)
        return result

    def uninstall(self) -> OrchestrationResult:
        """Remove Tomcat, then Java, then the previous-versions record."""
        result = OrchestrationResult("uninstall")
        for manager in (self.app_server, self.java):
            transition = manager.uninstall()
            if transition.steps:
                result.transitions.append(transition)
        if self.previous_versions.remove():
            LOGGER.info("Removed %s", self.previous_versions.path)
        return result

    def status(self) -> dict[str, object]:
        """Return installed, backup and desired versions for both components."""
        payload: dict[str, object] = {
            "java": self.java.status(),
            "app_server": self.app_server.status(),
        }
        try:
            desired = self.desired.load()
        except ConfigError as exc:
            payload["desired"] = None
            payload["desired_error"] = str(exc)
        else:
            payload["desired"] = {"java": desired.java_version, "tomcat": desired.tomcat_version}
        try:
            record = self.previous_versions.read()
        except StateError as exc:
            payload["previous"] = None
            payload["previous_error"] = str(exc)
        else:
            payload["previous"] = record.to_dict()["install"] if record else None
        return payload

    # Helpers ---------------------------------------------------------
    def _java_home(self, version: str) -> Path:
        return self.java.layout.install_path(version)

    def _converge_server(
        self,
        desired: DesiredState,
        current_tomcat: str | None,
        java_home: Path,
        java_changed: bool,
    ) -> TransitionResult | None:
        if current_tomcat is None:
            return self.app_server.install(
                desired.tomcat_version, desired.tomcat_artifact_url, java_home=java_home
            )
        if current_tomcat != desired.tomcat_version:
            return self.app_server.upgrade(
                desired.tomcat_version, desired.tomcat_artifact_url, java_home=java_home
            )
        if java_changed:
            return self.app_server.rebind(java_home)
        return None

    def _compensate(
        self,
        java_changed: bool,
        result: OrchestrationResult,
    ) -> tuple[bool, LifecycleError | None]:
        if not java_changed:
            return False, None
        LOGGER.warning("Compensating: rolling Java back after Tomcat failure")
        try:
            restored = self.java.rollback()
            result.transitions.append(restored)
            if self.inspector.installed(Component.APP_SERVER):
                self.app_server.rebind(self._java_home(restored.version or ""))
        except LifecycleError as exc:
            LOGGER.error("Java compensation failed: %s", exc)
            return False, exc
        return True, None

    def _record(
        self,
        java: str | None,
        tomcat: str | None,
        result: OrchestrationResult,
    ) -> PreviousVersionsRecord | None:
        try:
            return self.previous_versions.write(java, tomcat)
        except StateError as exc:
            LOGGER.warning("Could not record previous versions: %s", exc)
            result.warnings.append(str(exc))
            return None

    @staticmethod
    def _compare_hint(hint: PreviousVersionsRecord, result: OrchestrationResult) -> None:
        restored = {
            item.component: item.version
            for item in result.transitions
            if item.state is LifecycleState.ROLLED_BACK
        }
        expected = {Component.JAVA: hint.java, Component.APP_SERVER: hint.tomcat}
        for component, version in restored.items():
            wanted = expected.get(component)
            if wanted and version and wanted != version:
                result.warnings.append(
                    f"{component.label} restored to {version}; last recorded version was {wanted}."
                )


__all__ = ["OrchestrationResult", "UpgradeOrchestrator"]
