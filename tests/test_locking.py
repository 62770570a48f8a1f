"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from jtctl.locking import LockManager, LockTimeoutError


def test_global_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "jtctl.lock"
    with manager.global_lock() as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.global_lock(timeout=0.2):
        pass


def test_global_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass


def test_component_lock_uses_dedicated_directory(tmp_path: Path) -> None:
    """Component locks live under the components subdirectory."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.component_lock("app-server") as handle:
        lock_path = tmp_path / "run" / "components" / "app-server.lock"
        assert handle.path == lock_path
        assert lock_path.exists()


def test_mutate_components_acquires_global_then_components(tmp_path: Path) -> None:
    """Mutating components acquires the global lock followed by per-component locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_components(["java", "app-server", "java"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "jtctl.lock",
            "app-server.lock",
            "java.lock",
        ]
