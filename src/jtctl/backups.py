"""Single-slot backup storage used as the rollback source.

Each component keeps at most one backup directory under its backup root,
named ``<prefix>-<version>`` like the canonical install it was copied from.
Retaining a new backup replaces the previous one; restoring never consumes
the backup, so a rollback can be repeated.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

from .errors import BackupError
from .models import Backup, Component, ComponentLayout, sort_versions

LOGGER = logging.getLogger(__name__)


class BackupStore:
    """Maintain the backup slot of every managed component."""

    def __init__(self, layouts: Mapping[Component, ComponentLayout]) -> None:
        """Store the per-component layouts whose backup roots are managed."""
        self.layouts = dict(layouts)

    # Basic helpers -------------------------------------------------
    def ensure_root(self, component: Component) -> Path:
        """Ensure the backup root for *component* exists with safe permissions."""
        root = self.layouts[component].backup_root
        try:
            root.mkdir(parents=True, exist_ok=True)
            os.chmod(root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {root}: {exc}") from exc
        return root

    def entries(self, component: Component) -> list[Backup]:
        """Return all backups of *component*, oldest version first."""
        layout = self.layouts[component]
        if not layout.backup_root.is_dir():
            return []
        by_version: dict[str, Path] = {}
        for path in layout.backup_root.glob(layout.pattern):
            if not path.is_dir():
                continue
            version = layout.version_of(path.name)
            if version is not None:
                by_version[version] = path
        return [
            Backup(component=component, version=version, backup_path=by_version[version])
            for version in sort_versions(list(by_version))
        ]

    # Contract ------------------------------------------------------
    def retain(self, component: Component, source_path: Path, version: str) -> Backup:
        """Copy *source_path* into the backup slot, replacing any prior backup.

        The copy is staged next to the slot first; the previous backup is only
        deleted once the new copy is complete, and a failed copy leaves no
        partial directory behind.
        """
        layout = self.layouts[component]
        if not source_path.is_dir():
            raise BackupError(f"Cannot back up {source_path}: not a directory.")
        root = self.ensure_root(component)
        staging = Path(tempfile.mkdtemp(prefix=f".{layout.dir_name(version)}.", dir=str(root)))
        target = layout.backup_path(version)
        try:
            payload = staging / "payload"
            shutil.copytree(source_path, payload, symlinks=True)
            for existing in self.entries(component):
                LOGGER.info("Removing previous %s backup %s", component.label, existing.backup_path)
                shutil.rmtree(existing.backup_path)
            os.replace(payload, target)
        except (OSError, shutil.Error) as exc:
            raise BackupError(
                f"Failed to back up {component.label} {version} from {source_path}: {exc}"
            ) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        LOGGER.info("Retained %s %s backup at %s", component.label, version, target)
        return Backup(component=component, version=version, backup_path=target)

    def latest(self, component: Component) -> Backup | None:
        """Return the backup with the greatest version, or ``None``."""
        entries = self.entries(component)
        return entries[-1] if entries else None

    def restore(self, backup: Backup, destination: Path) -> Path:
        """Copy *backup* to *destination* without consuming the backup."""
        if not backup.backup_path.is_dir():
            raise BackupError(f"Backup {backup.backup_path} is missing.")
        if destination.exists():
            raise BackupError(f"Restore destination already exists: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{destination.name}.restore-", dir=str(destination.parent))
        )
        try:
            payload = staging / "payload"
            shutil.copytree(backup.backup_path, payload, symlinks=True)
            os.replace(payload, destination)
        except (OSError, shutil.Error) as exc:
            raise BackupError(
                f"Failed to restore {backup.component.label} {backup.version} "
                f"to {destination}: {exc}"
            ) from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return destination

    def discard(self, component: Component) -> list[Path]:
        """Delete every backup of *component*; return the removed paths."""
        removed: list[Path] = []
        for entry in self.entries(component):
            try:
                shutil.rmtree(entry.backup_path)
            except OSError as exc:
                raise BackupError(f"Failed to remove backup {entry.backup_path}: {exc}") from exc
            removed.append(entry.backup_path)
        return removed


__all__ = ["BackupError", "BackupStore"]
