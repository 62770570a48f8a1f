"""Loader for the desired-state descriptor.

The descriptor declares the target version and download location of each
component. Two shapes are accepted; both may be written as JSON or YAML::

    {"mave": {"dependencies": {
        "java":   {"version": "21", "packageUrlUnix": "https://.../jdk-21.tar.gz"},
        "tomcat": {"version": "10.1.34", "packageUrlUnix": "https://.../tomcat.tar.gz"}}}}

    java:
      version: "21"
      url: https://.../jdk-21.tar.gz
    tomcat:
      version: 10.1.34
      url: https://.../apache-tomcat-10.1.34.tar.gz
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import ConfigError
from .models import DesiredState

_URL_KEYS = ("packageUrlUnix", "url", "artifact_url")


@dataclass(slots=True)
class DesiredStateSource:
    """Read the descriptor at *path* once per operation."""

    path: Path

    def load(self) -> DesiredState:
        """Parse the descriptor, raising :class:`ConfigError` when unusable."""
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Desired-state descriptor not found: {self.path}") from None
        except OSError as exc:
            raise ConfigError(f"Cannot read desired-state descriptor {self.path}: {exc}") from exc
        try:
            payload = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Malformed desired-state descriptor {self.path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise ConfigError(f"Desired-state descriptor {self.path} must contain a mapping.")
        return parse_desired_state(payload, source=str(self.path))


def parse_desired_state(payload: Mapping[str, object], *, source: str = "<memory>") -> DesiredState:
    """Build a :class:`DesiredState` from an already-parsed mapping."""
    dependencies = _dependencies(payload)
    java_version, java_url = _entry(dependencies, "java", source)
    tomcat_version, tomcat_url = _entry(dependencies, "tomcat", source)
    return DesiredState(
        java_version=java_version,
        java_artifact_url=java_url,
        tomcat_version=tomcat_version,
        tomcat_artifact_url=tomcat_url,
    )


def _dependencies(payload: Mapping[str, object]) -> Mapping[str, object]:
    mave = payload.get("mave")
    if isinstance(mave, Mapping):
        dependencies = mave.get("dependencies")
        if isinstance(dependencies, Mapping):
            return dependencies
    return payload


def _entry(dependencies: Mapping[str, object], key: str, source: str) -> tuple[str, str]:
    section = dependencies.get(key)
    if not isinstance(section, Mapping):
        raise ConfigError(f"Desired-state descriptor {source} is missing the '{key}' section.")

    raw_version = section.get("version")
    if isinstance(raw_version, float):
        raise ConfigError(
            f"Desired-state descriptor {source}: {key}.version {raw_version!r} must be quoted "
            "so it is read as text."
        )
    version = _text(raw_version)
    if not version:
        raise ConfigError(f"Desired-state descriptor {source}: {key}.version is required.")
    if "/" in version or version in {".", ".."}:
        raise ConfigError(f"Desired-state descriptor {source}: invalid {key}.version {version!r}.")

    url = ""
    for url_key in _URL_KEYS:
        url = _text(section.get(url_key))
        if url:
            break
    if not url:
        raise ConfigError(f"Desired-state descriptor {source}: {key} artifact URL is required.")
    return version, url


def _text(value: object) -> str:
    # YAML turns an unquoted version such as 21 into an int.
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, str)):
        return str(value).strip()
    return ""


__all__ = ["DesiredStateSource", "parse_desired_state"]
