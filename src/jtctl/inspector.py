"""Discover which version of a component is installed on the host."""
from __future__ import annotations

import logging
from collections.abc import Mapping

from .errors import InconsistentStateError
from .models import Component, ComponentLayout, InstalledComponent, sort_versions

LOGGER = logging.getLogger(__name__)


class InstalledStateInspector:
    """Read the install root to find each component's canonical directory."""

    def __init__(self, layouts: Mapping[Component, ComponentLayout]) -> None:
        """Store the per-component layouts to inspect."""
        self.layouts = dict(layouts)

    def candidates(self, component: Component) -> list[InstalledComponent]:
        """Return every directory that looks like an install of *component*."""
        layout = self.layouts[component]
        try:
            entries = [path for path in layout.install_root.glob(layout.pattern) if path.is_dir()]
        except OSError as exc:
            LOGGER.debug("Cannot scan %s: %s", layout.install_root, exc)
            return []
        found: dict[str, InstalledComponent] = {}
        for path in entries:
            version = layout.version_of(path.name)
            if version is None:
                continue
            found[version] = InstalledComponent(
                component=component,
                version=version,
                install_path=path,
            )
        return [found[version] for version in sort_versions(list(found))]

    def installed(self, component: Component) -> InstalledComponent | None:
        """Return the single install of *component*, or ``None`` when absent.

        More than one candidate breaks the single-install invariant; instead of
        guessing which one is live this raises :class:`InconsistentStateError`.
        """
        candidates = self.candidates(component)
        if not candidates:
            return None
        if len(candidates) > 1:
            versions = ", ".join(item.version for item in candidates)
            raise InconsistentStateError(
                f"Multiple {component.label} installs found under "
                f"{self.layouts[component].install_root}: {versions}."
            )
        return candidates[0]

    def current_version(self, component: Component) -> str | None:
        """Return the installed version of *component*, if any."""
        found = self.installed(component)
        return found.version if found else None

    def assert_single(self, component: Component) -> None:
        """Raise when the install root holds more than one install of *component*."""
        self.installed(component)


__all__ = ["InstalledStateInspector"]
