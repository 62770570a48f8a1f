"""Structured operation logging for jtctl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`, which yields
an :class:`OperationScope`. The scope collects the ordered steps the command
performed and a final result (``success``, ``warning`` or ``error``). When the
scope exits a single JSON record is appended to ``operations.jsonl`` and a
one-line summary to ``jtctl.log`` in the logs directory.

Logging must never break a lifecycle transition: when the logs directory
cannot be created, or a write fails, the logger disables itself and later
operations only emit to the standard :mod:`logging` tree.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "jtctl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


def _current_user() -> str | None:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return None


class OperationScope:
    """Mutable record for a single command invocation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start tracking *command* with its arguments and target."""
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now_iso()
        self._started = time.monotonic()
        self.steps: list[dict[str, object]] = []
        self.lock_wait_ms: int | None = None
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation trace."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its lock."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=rc,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            changed=changed,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        record: dict[str, object] = {
            "ts": self.started_at,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "steps": _sanitise(self.steps),
            "result": self.result or {"status": "unknown", "message": ""},
            "duration_ms": duration_ms,
            "context": {
                "jtctl_version": __version__,
                "pid": os.getpid(),
                "user": _current_user(),
            },
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        rc: int,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
        }
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitise(context)
        self.result = result


class StructuredLogger:
    """Append operation records to the jtctl log directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the logs directory, disabling file output on failure."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", logs_dir, exc)
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Track *command* and persist its record when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        LOGGER.debug("operation %s started (%s)", command, scope.op_id)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record["result"]
        status = result.get("status", "unknown") if isinstance(result, Mapping) else "unknown"
        message = result.get("message", "") if isinstance(result, Mapping) else ""
        LOGGER.debug("operation %s finished: %s", scope.command, status)
        if not self._enabled:
            return
        human = f"{record['ts']} {str(status).upper()} {scope.command}: {message}\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
