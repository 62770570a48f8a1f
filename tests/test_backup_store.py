"""Tests for the single-slot backup store."""
from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from jtctl.backups import BackupStore
from jtctl.errors import BackupError
from jtctl.models import Backup, Component, ComponentLayout


def _store(tmp_path: Path) -> BackupStore:
    layout = ComponentLayout(
        Component.APP_SERVER,
        "tomcat",
        tmp_path / "opt",
        tmp_path / "opt" / "tomcat_backups",
        "apache-tomcat-*",
    )
    return BackupStore({Component.APP_SERVER: layout})


def _install(tmp_path: Path, version: str) -> Path:
    path = tmp_path / "opt" / f"tomcat-{version}"
    (path / "bin").mkdir(parents=True)
    (path / "bin" / "catalina.sh").write_text(f"# {version}\n")
    (path / "bin" / "latest").symlink_to("catalina.sh")
    return path


def test_retain_copies_install_and_keeps_one_slot(tmp_path: Path) -> None:
    """A new backup replaces the previous one."""
    store = _store(tmp_path)
    first = store.retain(Component.APP_SERVER, _install(tmp_path, "9.0.80"), "9.0.80")

    assert first.backup_path == tmp_path / "opt" / "tomcat_backups" / "tomcat-9.0.80"
    assert (first.backup_path / "bin" / "catalina.sh").read_text() == "# 9.0.80\n"
    assert (first.backup_path / "bin" / "latest").is_symlink()
    assert oct(store.layouts[Component.APP_SERVER].backup_root.stat().st_mode & 0o777) == "0o750"

    second = store.retain(Component.APP_SERVER, _install(tmp_path, "10.1.34"), "10.1.34")

    assert [entry.version for entry in store.entries(Component.APP_SERVER)] == ["10.1.34"]
    assert store.latest(Component.APP_SERVER) == second
    assert not first.backup_path.exists()


def test_failed_copy_keeps_previous_backup(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed copy leaves the existing slot and no partial directory."""
    store = _store(tmp_path)
    previous = store.retain(Component.APP_SERVER, _install(tmp_path, "9.0.80"), "9.0.80")
    source = _install(tmp_path, "10.1.34")

    def fail_copytree(*args: object, **kwargs: object) -> None:
        raise shutil.Error("disk full")

    monkeypatch.setattr(shutil, "copytree", fail_copytree)

    with pytest.raises(BackupError, match="disk full"):
        store.retain(Component.APP_SERVER, source, "10.1.34")

    assert previous.backup_path.exists()
    assert sorted(path.name for path in previous.backup_path.parent.iterdir()) == [
        "tomcat-9.0.80"
    ]


def test_retain_requires_directory(tmp_path: Path) -> None:
    """Backing up a missing install fails before touching the slot."""
    store = _store(tmp_path)

    with pytest.raises(BackupError, match="not a directory"):
        store.retain(Component.APP_SERVER, tmp_path / "opt" / "tomcat-1", "1")


def test_latest_uses_version_ordering(tmp_path: Path) -> None:
    """Latest compares versions numerically rather than lexically."""
    store = _store(tmp_path)
    root = tmp_path / "opt" / "tomcat_backups"
    for name in ("tomcat-9.0.80", "tomcat-10.1.34"):
        (root / name).mkdir(parents=True)
    (root / "tomcat-notes.txt").write_text("stray file")

    latest = store.latest(Component.APP_SERVER)

    assert latest is not None
    assert latest.version == "10.1.34"
    assert [entry.version for entry in store.entries(Component.APP_SERVER)] == [
        "9.0.80",
        "10.1.34",
    ]


def test_latest_is_none_without_backups(tmp_path: Path) -> None:
    """No backup root means no backup."""
    assert _store(tmp_path).latest(Component.APP_SERVER) is None


def test_restore_is_non_destructive(tmp_path: Path) -> None:
    """Restoring copies the backup and leaves it in place."""
    store = _store(tmp_path)
    source = _install(tmp_path, "9.0.80")
    backup = store.retain(Component.APP_SERVER, source, "9.0.80")
    shutil.rmtree(source)

    restored = store.restore(backup, source)

    assert restored == source
    assert (source / "bin" / "catalina.sh").read_text() == "# 9.0.80\n"
    assert backup.backup_path.exists()
    assert sorted(path.name for path in source.parent.iterdir()) == [
        "tomcat-9.0.80",
        "tomcat_backups",
    ]


def test_restore_refuses_existing_destination(tmp_path: Path) -> None:
    """Restore never overwrites a live install."""
    store = _store(tmp_path)
    source = _install(tmp_path, "9.0.80")
    backup = store.retain(Component.APP_SERVER, source, "9.0.80")

    with pytest.raises(BackupError, match="already exists"):
        store.restore(backup, source)


def test_restore_missing_backup_raises(tmp_path: Path) -> None:
    """A vanished backup directory is reported."""
    store = _store(tmp_path)
    ghost = Backup(Component.APP_SERVER, "1", tmp_path / "opt" / "tomcat_backups" / "tomcat-1")

    with pytest.raises(BackupError, match="missing"):
        store.restore(ghost, tmp_path / "opt" / "tomcat-1")


def test_discard_is_idempotent(tmp_path: Path) -> None:
    """Discarding removes every backup and tolerates an empty slot."""
    store = _store(tmp_path)
    backup = store.retain(Component.APP_SERVER, _install(tmp_path, "9.0.80"), "9.0.80")

    assert store.discard(Component.APP_SERVER) == [backup.backup_path]
    assert store.discard(Component.APP_SERVER) == []
