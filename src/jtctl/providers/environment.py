"""Maintain runtime home declarations in system and shell environment files.

Every mutation is remove-then-set: all lines declaring a variable are
dropped before the single authoritative declaration is appended, so repeated
calls converge to one line per file no matter how many stale copies earlier
tooling left behind.
"""
from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from ..config import EnvironmentConfig

LOGGER = logging.getLogger(__name__)


class EnvironmentFileError(RuntimeError):
    """Raised when an environment file cannot be rewritten."""


@dataclass(frozen=True, slots=True)
class EnvironmentTarget:
    """A file carrying declarations, and how they are written there."""

    path: Path
    export: bool
    required: bool


def _declaration_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*(?:export\s+)?{re.escape(name)}=")


def _path_entry_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*(?:export\s+)?PATH=.*\$\{{?{re.escape(name)}\b")


def render_declaration(name: str, value: str, *, export: bool) -> str:
    """Return the declaration line for *name* (without newline)."""
    prefix = "export " if export else ""
    return f'{prefix}{name}="{value}"'


def render_path_entry(name: str) -> str:
    """Return the ``PATH`` line prepending ``$NAME/bin``."""
    return f'export PATH="${name}/bin:$PATH"'


class EnvironmentVariableManager:
    """Apply one binding across every configured environment file."""

    def __init__(self, config: EnvironmentConfig, *, dry_run: bool = False) -> None:
        """Resolve the target files from *config*."""
        self.config = config
        self.dry_run = dry_run

    def targets(self) -> list[EnvironmentTarget]:
        """Return the system file, the profile and the shell rc files in order."""
        targets = [
            EnvironmentTarget(self.config.system_file, export=False, required=True),
            EnvironmentTarget(self.config.profile_file, export=True, required=True),
        ]
        targets.extend(
            EnvironmentTarget(path, export=True, required=False)
            for path in self.config.shell_rc_files
        )
        return targets

    # Single-file contract ----------------------------------------------
    def set_binding(
        self,
        file: Path,
        name: str,
        value: str,
        *,
        export: bool = False,
        path_entry: bool = False,
    ) -> bool:
        """Replace every declaration of *name* in *file* with one line.

        With *path_entry* an ``export PATH="$NAME/bin:$PATH"`` line is kept
        after the declaration as well. Returns True when the file changed.
        """
        lines = _read_lines(file)
        wanted = [render_declaration(name, value, export=export)]
        if path_entry:
            wanted.append(render_path_entry(name))
        current = [line for line in lines if _matches(line, name, path_entry)]
        if current == wanted:
            return False
        kept = [line for line in lines if not _matches(line, name, path_entry)]
        return self._write(file, kept + wanted)

    def remove_binding(self, file: Path, name: str) -> bool:
        """Strip every declaration of *name* (and its PATH entry) from *file*."""
        if not file.exists():
            return False
        lines = _read_lines(file)
        kept = [line for line in lines if not _matches(line, name, True)]
        if kept == lines:
            return False
        return self._write(file, kept)

    # Multi-file helpers ----------------------------------------------
    def apply(self, name: str, value: str, *, path_entry: bool = False) -> list[Path]:
        """Bind *name* to *value* in every target; return the files changed.

        Missing optional shell rc files are skipped; the system file and the
        profile are created when absent.
        """
        changed: list[Path] = []
        for target in self.targets():
            if not target.required and not target.path.exists():
                LOGGER.debug("Skipping missing optional file %s", target.path)
                continue
            if self.set_binding(
                target.path,
                name,
                value,
                export=target.export,
                path_entry=path_entry and target.export,
            ):
                changed.append(target.path)
        return changed

    def strip(self, names: Iterable[str]) -> list[Path]:
        """Remove every declaration of *names* from all targets."""
        changed: list[Path] = []
        for target in self.targets():
            for name in names:
                if self.remove_binding(target.path, name) and target.path not in changed:
                    changed.append(target.path)
        return changed

    def current_value(self, name: str) -> str | None:
        """Return the value declared for *name* in the system file, if any."""
        pattern = _declaration_pattern(name)
        for line in reversed(_read_lines(self.config.system_file)):
            if pattern.match(line):
                value = line.split("=", 1)[1].strip()
                return value.strip('"').strip("'")
        return None

    def _write(self, file: Path, lines: list[str]) -> bool:
        if self.dry_run:
            return True
        content = "\n".join(lines) + "\n" if lines else ""
        mode = 0o644
        try:
            if file.exists():
                mode = file.stat().st_mode & 0o777
            file.parent.mkdir(parents=True, exist_ok=True)
            temp = file.with_name(f".{file.name}.jtctl-tmp")
            temp.write_text(content, encoding="utf-8")
            temp.chmod(mode)
            temp.replace(file)
        except OSError as exc:
            raise EnvironmentFileError(f"Failed to update {file}: {exc}") from exc
        return True


def _matches(line: str, name: str, path_entry: bool) -> bool:
    if _declaration_pattern(name).match(line):
        return True
    return path_entry and bool(_path_entry_pattern(name).match(line))


def _read_lines(file: Path) -> list[str]:
    try:
        return file.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise EnvironmentFileError(f"Failed to read {file}: {exc}") from exc


__all__ = [
    "EnvironmentFileError",
    "EnvironmentTarget",
    "EnvironmentVariableManager",
    "render_declaration",
    "render_path_entry",
]
