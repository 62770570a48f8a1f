"""Per-component install, upgrade, rollback and uninstall transitions.

A :class:`ComponentLifecycleManager` owns the single live install and the
single backup of one component. Every transition is ordered so that the
host is never left without a recoverable copy:

* upgrade retains a backup before the live install is removed;
* any failure after the backup restores it before re-raising;
* stale units are pruned only once the new unit is active.

The Java component binds ``JAVA_HOME`` (and the ``PATH`` entry); the
application server additionally owns its service account and systemd units.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .backups import BackupStore
from .errors import (
    BackupError,
    FetchError,
    InstallError,
    LifecycleError,
    NoBackupError,
    NoOpError,
    ServiceActivationError,
)
from .inspector import InstalledStateInspector
from .models import (
    Backup,
    Component,
    ComponentLayout,
    InstalledComponent,
    LifecycleState,
    TransitionResult,
)
from .providers.accounts import AccountError, ServiceAccountManager
from .providers.environment import EnvironmentFileError, EnvironmentVariableManager
from .providers.fetcher import ArtifactFetcher
from .providers.systemd import ServiceUnitManager, SystemdError

LOGGER = logging.getLogger(__name__)


class ComponentLifecycleManager:
    """Drive one component between lifecycle states."""

    def __init__(
        self,
        layout: ComponentLayout,
        *,
        inspector: InstalledStateInspector,
        backups: BackupStore,
        fetcher: ArtifactFetcher,
        environment: EnvironmentVariableManager,
        units: ServiceUnitManager | None = None,
        accounts: ServiceAccountManager | None = None,
    ) -> None:
        """Wire the collaborators used by this component's transitions."""
        self.layout = layout
        self.component = layout.component
        self.inspector = inspector
        self.backups = backups
        self.fetcher = fetcher
        self.environment = environment
        self.units = units
        self.accounts = accounts
        self.state = LifecycleState.ABSENT

    @property
    def supervised(self) -> bool:
        """Return True when this component runs under a service unit."""
        return self.component is Component.APP_SERVER and self.units is not None

    def refresh(self) -> LifecycleState:
        """Derive :attr:`state` from what is installed on disk."""
        installed = self.inspector.installed(self.component)
        self.state = LifecycleState.INSTALLED if installed else LifecycleState.ABSENT
        return self.state

    # Transitions -----------------------------------------------------
    def install(
        self,
        version: str,
        artifact_url: str,
        *,
        java_home: Path | None = None,
    ) -> TransitionResult:
        """Fetch and configure *version* on a host where the component is absent.

        An existing directory for the same version is replaced. A different
        installed version is refused; use :meth:`upgrade` for that.
        """
        label = self.component.label
        java_home = self._resolve_java_home(java_home)
        for candidate in self.inspector.candidates(self.component):
            if candidate.version != version:
                raise InstallError(
                    f"{label} {candidate.version} is already installed at "
                    f"{candidate.install_path}; upgrade instead."
                )
        result = TransitionResult(self.component, LifecycleState.INSTALLED, version=version)
        destination = self.layout.install_path(version)
        if destination.exists():
            LOGGER.info("Replacing existing %s directory %s", label, destination)
            self._remove_tree(destination)
            result.step("remove-existing", str(destination))

        try:
            self.fetcher.fetch(self.layout, version, artifact_url, destination)
        except FetchError as exc:
            raise InstallError(f"Failed to install {label} {version}: {exc}") from exc
        result.step("fetch", str(destination))

        self._prepare(destination, result)
        self._bind(destination, result)
        if self.supervised:
            try:
                self._activate(version, destination, java_home, result)
            except ServiceActivationError as exc:
                raise InstallError(f"Failed to start {label} {version}: {exc}") from exc
            self._prune(version, result)

        self.inspector.assert_single(self.component)
        self.state = LifecycleState.INSTALLED
        LOGGER.info("Installed %s %s at %s", label, version, destination)
        return result

    def upgrade(
        self,
        version: str,
        artifact_url: str,
        *,
        java_home: Path | None = None,
    ) -> TransitionResult:
        """Replace the installed version with *version*, keeping a backup.

        Once the backup is retained, any failure while removing the old
        install, fetching, preparing, binding or activating the new version
        restores the backup (and the previous unit) before the error is
        re-raised. A :class:`BackupError` aborts with the old version untouched.
        """
        label = self.component.label
        current = self.inspector.installed(self.component)
        if current is None:
            raise InstallError(f"{label} is not installed; nothing to upgrade.")
        if current.version == version:
            raise NoOpError(f"{label} {version} is already installed.")
        java_home = self._resolve_java_home(java_home)

        result = TransitionResult(
            self.component,
            LifecycleState.BACKING_UP,
            version=version,
            previous_version=current.version,
        )
        self.state = LifecycleState.BACKING_UP
        try:
            backup = self.backups.retain(self.component, current.install_path, current.version)
        except BackupError:
            self.state = LifecycleState.INSTALLED
            raise
        result.backup = backup
        result.step("backup", str(backup.backup_path))

        destination = self.layout.install_path(version)
        try:
            self._remove_tree(current.install_path)
            result.step("remove-old", str(current.install_path))

            self.state = LifecycleState.UPGRADING
            result.state = LifecycleState.UPGRADING
            self.fetcher.fetch(self.layout, version, artifact_url, destination)
            result.step("fetch", str(destination))

            self._prepare(destination, result)
            self._bind(destination, result)
            if self.supervised:
                self._activate(version, destination, java_home, result)
        except LifecycleError as exc:
            LOGGER.warning(
                "Upgrading %s to %s failed (%s); restoring %s", label, version, exc, current.version
            )
            self._restore_previous(backup, current, java_home, result, failed_version=version)
            raise
        if self.supervised:
            self._prune(version, result)

        self.inspector.assert_single(self.component)
        self.state = LifecycleState.INSTALLED
        result.state = LifecycleState.INSTALLED
        LOGGER.info("Upgraded %s %s -> %s", label, current.version, version)
        return result

    def rollback(self, *, java_home: Path | None = None) -> TransitionResult:
        """Reinstate the retained backup; the backup itself is kept."""
        label = self.component.label
        backup = self.backups.latest(self.component)
        if backup is None:
            raise NoBackupError(f"No {label} backup found under {self.layout.backup_root}.")
        java_home = self._resolve_java_home(java_home)

        candidates = self.inspector.candidates(self.component)
        result = TransitionResult(
            self.component,
            LifecycleState.ROLLED_BACK,
            version=backup.version,
            previous_version=candidates[-1].version if len(candidates) == 1 else None,
            backup=backup,
        )
        if self.supervised:
            stopped = self._require_units().deactivate_all()
            result.step("deactivate-units", ", ".join(stopped))
        for candidate in candidates:
            self._remove_tree(candidate.install_path)
            result.step("remove", str(candidate.install_path))

        destination = self.layout.install_path(backup.version)
        self.backups.restore(backup, destination)
        result.step("restore", str(destination))

        self._prepare(destination, result)
        self._bind(destination, result)
        if self.supervised:
            self._activate(backup.version, destination, java_home, result)
            self._prune(backup.version, result)

        self.inspector.assert_single(self.component)
        self.state = LifecycleState.ROLLED_BACK
        LOGGER.info("Rolled back %s to %s", label, backup.version)
        return result

    def uninstall(self) -> TransitionResult:
        """Remove installs, units, backups and environment bindings.

        Safe to repeat; an absent component succeeds without changes.
        """
        result = TransitionResult(self.component, LifecycleState.REMOVED)
        if self.units is not None:
            stopped = self.units.deactivate_all()
            if stopped:
                result.step("deactivate-units", ", ".join(stopped))
            try:
                removed_units = self.units.remove_all()
            except (OSError, SystemdError) as exc:
                raise InstallError(f"Failed to remove {self.component.label} units: {exc}") from exc
            if removed_units:
                result.step("remove-units", ", ".join(removed_units))

        for candidate in self.inspector.candidates(self.component):
            self._remove_tree(candidate.install_path)
            result.step("remove", str(candidate.install_path))
            result.previous_version = candidate.version

        removed_backups = self.backups.discard(self.component)
        if removed_backups:
            result.step("discard-backups", ", ".join(str(path) for path in removed_backups))

        try:
            changed = self.environment.strip([self.component.env_var])
        except EnvironmentFileError as exc:
            raise InstallError(str(exc)) from exc
        if changed:
            result.step("strip-environment", ", ".join(str(path) for path in changed))

        self.state = LifecycleState.REMOVED
        return result

    def rebind(self, java_home: Path) -> TransitionResult:
        """Rewrite and restart the installed version's unit against *java_home*."""
        current = self.inspector.installed(self.component)
        if current is None or not self.supervised:
            raise InstallError(f"{self.component.label} has no installed service to rebind.")
        result = TransitionResult(
            self.component,
            LifecycleState.INSTALLED,
            version=current.version,
            previous_version=current.version,
        )
        self._activate(current.version, current.install_path, java_home, result)
        self._prune(current.version, result)
        self.state = LifecycleState.INSTALLED
        return result

    def status(self) -> dict[str, object]:
        """Return a summary of the component's install, backup and units."""
        candidates = self.inspector.candidates(self.component)
        backup = self.backups.latest(self.component)
        payload: dict[str, object] = {
            "component": self.component.value,
            "installed": [item.version for item in candidates],
            "install_paths": [str(item.install_path) for item in candidates],
            "consistent": len(candidates) <= 1,
            "backup": backup.version if backup else None,
            "state": self.state.value,
        }
        if self.units is not None:
            payload["units"] = self.units.installed_versions()
        return payload

    # Steps -----------------------------------------------------------
    def _resolve_java_home(self, java_home: Path | None) -> Path | None:
        if not self.supervised or java_home is not None:
            return java_home
        declared = self.environment.current_value(Component.JAVA.env_var)
        if declared:
            return Path(declared)
        raise InstallError(
            f"{self.component.label} needs a Java home; none was given and "
            f"{Component.JAVA.env_var} is not declared."
        )

    def _prepare(self, destination: Path, result: TransitionResult) -> None:
        if self.accounts is None:
            return
        try:
            self.accounts.ensure_account()
            self.accounts.apply_ownership(destination)
        except AccountError as exc:
            raise InstallError(str(exc)) from exc
        result.step("permissions", str(destination))

    def _bind(self, destination: Path, result: TransitionResult) -> None:
        name = self.component.env_var
        try:
            changed = self.environment.apply(
                name,
                str(destination),
                path_entry=self.component is Component.JAVA,
            )
        except EnvironmentFileError as exc:
            raise InstallError(str(exc)) from exc
        result.step("environment", f"{name}={destination}" + (" (updated)" if changed else ""))

    def _activate(
        self,
        version: str,
        catalina_home: Path,
        java_home: Path | None,
        result: TransitionResult,
    ) -> None:
        units = self._require_units()
        if java_home is None:
            raise InstallError(
                f"Cannot activate {self.component.label} {version} without a Java home."
            )
        units.write(version, java_home=java_home, catalina_home=catalina_home)
        units.activate(version)
        result.step("activate", units.unit_name(version))

    def _prune(self, version: str, result: TransitionResult) -> None:
        units = self._require_units()
        try:
            removed = units.prune_others(version)
        except (OSError, SystemdError) as exc:
            LOGGER.warning("Failed to prune stale %s units: %s", self.component.label, exc)
            result.step("prune-units", f"failed: {exc}")
            return
        if removed:
            result.step("prune-units", ", ".join(removed))

    def _restore_previous(
        self,
        backup: Backup,
        previous: InstalledComponent,
        java_home: Path | None,
        result: TransitionResult,
        *,
        failed_version: str,
    ) -> None:
        failed_path = self.layout.install_path(failed_version)
        if failed_path.exists():
            self._remove_tree(failed_path)
        if previous.install_path.exists():
            self._remove_tree(previous.install_path)
        self.backups.restore(backup, previous.install_path)
        result.step("restore", str(previous.install_path))
        self._prepare(previous.install_path, result)
        self._bind(previous.install_path, result)
        if self.supervised:
            self._activate(previous.version, previous.install_path, java_home, result)
            self._prune(previous.version, result)
        self.state = LifecycleState.INSTALLED
        result.state = LifecycleState.INSTALLED
        result.version = previous.version

    def _require_units(self) -> ServiceUnitManager:
        if self.units is None:
            raise InstallError(f"{self.component.label} is not managed by service units.")
        return self.units

    def _remove_tree(self, path: Path) -> None:
        try:
            if path.is_symlink() or path.is_file():
                path.unlink()
            else:
                shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise InstallError(f"Failed to remove {path}: {exc}") from exc


__all__ = ["ComponentLifecycleManager"]
