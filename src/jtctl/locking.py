"""Host-wide advisory locks serialising jtctl invocations.

Lifecycle transitions assume that only one operation mutates the install
root, the backup slots and the unit directory at a time. Every mutating
command therefore takes the global lock first and then one lock per
component it touches, always in that order.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "jtctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire ``flock``-based locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def global_path(self) -> Path:
        """Return the host-wide lock file path."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def component_path(self, component: str) -> Path:
        """Return the lock file path for *component*."""
        return self.runtime_dir / "components" / f"{component}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide lock for the duration of the block."""
        with self._acquire(self.global_path(), timeout) as handle:
            yield handle

    @contextmanager
    def component_lock(
        self,
        component: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock for a single component."""
        with self._acquire(self.component_path(component), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_components(
        self,
        components: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each component lock (sorted)."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for component in sorted(set(components)):
                handles.append(
                    stack.enter_context(self.component_lock(component, timeout=timeout))
                )
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
