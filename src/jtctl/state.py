"""Persistence for the last known-good version pair.

``previous_versions.yml`` (under the state directory) records which Java and
Tomcat versions were active before the most recent successful install or
upgrade::

    install:
      java: "17.0.2"
      tomcat: "9.0.80"
    recorded_at: "2026-01-01T00:00:00+00:00"

The file is written atomically with mode ``0644`` so the operator that invoked
the tool can inspect or recreate it.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage jtctl state. Install with `pip install jtctl`."
    ) from exc

from .errors import StateError


@dataclass(frozen=True)
class PreviousVersionsRecord:
    """Versions active before the last successful transition."""

    java: str | None
    tomcat: str | None
    recorded_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        payload: dict[str, object] = {"install": {"java": self.java, "tomcat": self.tomcat}}
        if self.recorded_at:
            payload["recorded_at"] = self.recorded_at
        return payload


@dataclass(frozen=True)
class PreviousVersionsStore:
    """Read and write :class:`PreviousVersionsRecord` files."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the path after initialisation."""
        object.__setattr__(self, "path", self.path.expanduser())

    def read(self) -> PreviousVersionsRecord | None:
        """Return the stored record, or ``None`` when no record exists."""
        if not self.path.exists():
            return None
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateError(f"Failed to parse {self.path}: {exc}") from exc
        except OSError as exc:
            raise StateError(f"Failed to read {self.path}: {exc}") from exc
        if data is None:
            return None
        if not isinstance(data, Mapping) or not isinstance(data.get("install"), Mapping):
            raise StateError(f"{self.path} must contain an 'install' mapping.")
        install = data["install"]
        recorded_at = data.get("recorded_at")
        return PreviousVersionsRecord(
            java=_optional_text(install.get("java")),
            tomcat=_optional_text(install.get("tomcat")),
            recorded_at=str(recorded_at) if recorded_at is not None else None,
        )

    def write(self, java: str | None, tomcat: str | None) -> PreviousVersionsRecord:
        """Atomically persist *java* and *tomcat* as the previous pair."""
        record = PreviousVersionsRecord(
            java=java,
            tomcat=tomcat,
            recorded_at=datetime.now(tz=UTC).isoformat(),
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise StateError(f"Failed to prepare {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(record.to_dict(), handle, sort_keys=False)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateError(f"Failed to write {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return record

    def remove(self) -> bool:
        """Delete the record; return True when a file was removed."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StateError(f"Failed to remove {self.path}: {exc}") from exc
        return True


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = ["PreviousVersionsRecord", "PreviousVersionsStore", "StateError"]
