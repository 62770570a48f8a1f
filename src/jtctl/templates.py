"""Jinja2 template rendering for generated host configuration."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from pathlib import Path

from jinja2 import (
    BaseLoader,
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)


class TemplateEngine:
    """Render built-in templates, letting an override directory shadow them."""

    def __init__(self, loader: BaseLoader) -> None:
        """Create the Jinja2 environment around *loader*."""
        self.environment = Environment(
            loader=loader,
            undefined=StrictUndefined,
            autoescape=False,  # noqa: S701 - renders config files, not HTML
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates under *override_dir*."""
        loaders: list[BaseLoader] = []
        if override_dir is not None:
            candidate = override_dir.expanduser()
            if candidate.is_dir():
                loaders.append(FileSystemLoader(str(candidate)))
        loaders.append(PackageLoader("jtctl", "templates"))
        return cls(ChoiceLoader(loaders))

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return True when content changed."""
        content = self.render_to_string(name, context)
        if destination.exists() and destination.read_text(encoding="utf-8") == content:
            if destination.stat().st_mode & 0o777 != mode:
                os.chmod(destination, mode)
            return False

        destination.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=f".{destination.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)
        return True


__all__ = ["TemplateEngine"]
