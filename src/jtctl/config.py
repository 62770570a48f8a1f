"""Configuration loader for jtctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/jtctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``JTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export JTCTL_INSTALL_ROOT=/srv/runtimes
    export JTCTL_TOMCAT__BACKUP_ROOT=/var/backups/tomcat
    export JTCTL_DOWNLOAD_TIMEOUT=120

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load jtctl configuration. Install with "
        "`pip install jtctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ConfigError

ENV_PREFIX = "JTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


@dataclass(frozen=True)
class ComponentConfig:
    """Filesystem conventions for one managed component."""

    prefix: str
    backup_root: Path
    extracted_glob: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "prefix": self.prefix,
            "backup_root": str(self.backup_root),
            "extracted_glob": self.extracted_glob,
        }


@dataclass(frozen=True)
class ServiceConfig:
    """Account and restart policy for the supervised application server."""

    user: str = "tomcat"
    group: str = "tomcat"
    restart_policy: str = "always"
    manage_account: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "group": self.group,
            "restart_policy": self.restart_policy,
            "manage_account": self.manage_account,
        }


@dataclass(frozen=True)
class EnvironmentConfig:
    """Files that carry runtime home declarations."""

    system_file: Path = Path("/etc/environment")
    profile_file: Path = Path("/etc/profile")
    shell_rc_files: tuple[Path, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "system_file": str(self.system_file),
            "profile_file": str(self.profile_file),
            "shell_rc_files": [str(path) for path in self.shell_rc_files],
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for jtctl."""

    config_file: Path
    install_root: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    staging_dir: Path
    desired_state_file: Path
    lock_timeout: float
    download_timeout: float
    java: ComponentConfig
    tomcat: ComponentConfig
    service: ServiceConfig
    environment: EnvironmentConfig
    systemd: SystemdConfig

    @property
    def previous_versions_file(self) -> Path:
        """Return the path of the last known-good versions record."""
        return self.state_dir / "previous_versions.yml"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "staging_dir": str(self.staging_dir),
            "desired_state_file": str(self.desired_state_file),
            "lock_timeout": self.lock_timeout,
            "download_timeout": self.download_timeout,
            "java": self.java.to_dict(),
            "tomcat": self.tomcat.to_dict(),
            "service": self.service.to_dict(),
            "environment": self.environment.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/jtctl/config.yml",
    "install_root": "/opt",
    "state_dir": "/var/lib/jtctl",
    "logs_dir": "/var/log/jtctl",
    "runtime_dir": "/run/jtctl",
    "templates_dir": "/etc/jtctl/templates",
    "staging_dir": "/tmp",
    "desired_state_file": "/etc/jtctl/desired-state.json",
    "lock_timeout": 30.0,
    "download_timeout": 300.0,
    "java": {
        "prefix": "openjdk",
        "backup_root": "/opt/java_backups",
        "extracted_glob": "jdk*",
    },
    "tomcat": {
        "prefix": "tomcat",
        "backup_root": "/opt/tomcat_backups",
        "extracted_glob": "apache-tomcat-*",
    },
    "service": {
        "user": "tomcat",
        "group": "tomcat",
        "restart_policy": "always",
        "manage_account": True,
    },
    "environment": {
        "system_file": "/etc/environment",
        "profile_file": "/etc/profile",
        "shell_rc_files": ["~/.bashrc", "~/.bash_profile", "~/.zshrc"],
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
COMPONENT_KEYS = {"prefix", "backup_root", "extracted_glob"}
SERVICE_KEYS = {"user", "group", "restart_policy", "manage_account"}
ENVIRONMENT_KEYS = {"system_file", "profile_file", "shell_rc_files"}
SYSTEMD_KEYS = {"unit_dir", "systemctl_bin"}
ALLOWED_RESTART_POLICIES = {"no", "always", "on-failure", "on-abnormal", "on-abort"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _reject_unknown(mapping: Mapping[str, object], allowed: set[str], label: str) -> None:
    unknown = set(mapping.keys()) - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {label} configuration keys: {joined}.")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for label in ("lock_timeout", "download_timeout"):
        value = raw.get(label)
        if value is not None:
            _expect_positive_float(value, label, default=1.0)

    for component in ("java", "tomcat"):
        mapping = _as_dict(raw.get(component), component)
        _reject_unknown(mapping, COMPONENT_KEYS, component)
        prefix = mapping.get("prefix")
        if prefix is not None and (not isinstance(prefix, str) or not prefix.strip()):
            raise ConfigError(f"{component}.prefix must be a non-empty string.")
        if isinstance(prefix, str) and "/" in prefix:
            raise ConfigError(f"{component}.prefix must not contain '/'.")

    java_prefix = _as_dict(raw.get("java"), "java").get("prefix")
    tomcat_prefix = _as_dict(raw.get("tomcat"), "tomcat").get("prefix")
    if java_prefix is not None and java_prefix == tomcat_prefix:
        raise ConfigError("java.prefix and tomcat.prefix must differ.")

    service = _as_dict(raw.get("service"), "service")
    _reject_unknown(service, SERVICE_KEYS, "service")
    policy = service.get("restart_policy")
    if policy is not None and str(policy) not in ALLOWED_RESTART_POLICIES:
        allowed = ", ".join(sorted(ALLOWED_RESTART_POLICIES))
        raise ConfigError(f"Unsupported restart policy '{policy}'. Allowed: {allowed}.")

    environment = _as_dict(raw.get("environment"), "environment")
    _reject_unknown(environment, ENVIRONMENT_KEYS, "environment")
    rc_files = environment.get("shell_rc_files")
    if rc_files is not None:
        _as_sequence(rc_files, "environment.shell_rc_files")

    systemd = _as_dict(raw.get("systemd"), "systemd")
    _reject_unknown(systemd, SYSTEMD_KEYS, "systemd")


def _build_component(raw: Mapping[str, object], label: str) -> ComponentConfig:
    mapping = _as_dict(raw.get(label), label)
    defaults = _as_dict(DEFAULTS[label], label)
    return ComponentConfig(
        prefix=str(mapping.get("prefix", defaults["prefix"])).strip(),
        backup_root=_to_path(mapping.get("backup_root", defaults["backup_root"])),
        extracted_glob=str(mapping.get("extracted_glob", defaults["extracted_glob"])),
    )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    service_mapping = _as_dict(raw.get("service"), "service")
    service = ServiceConfig(
        user=str(service_mapping.get("user", "tomcat")),
        group=str(service_mapping.get("group", "tomcat")),
        restart_policy=str(service_mapping.get("restart_policy", "always")),
        manage_account=bool(service_mapping.get("manage_account", True)),
    )

    environment_mapping = _as_dict(raw.get("environment"), "environment")
    rc_raw = environment_mapping.get("shell_rc_files")
    rc_files = (
        tuple(_to_path(item) for item in _as_sequence(rc_raw, "environment.shell_rc_files"))
        if rc_raw is not None
        else ()
    )
    environment = EnvironmentConfig(
        system_file=_to_path(environment_mapping.get("system_file", "/etc/environment")),
        profile_file=_to_path(environment_mapping.get("profile_file", "/etc/profile")),
        shell_rc_files=rc_files,
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        install_root=_to_path(raw.get("install_root")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        staging_dir=_to_path(raw.get("staging_dir")),
        desired_state_file=_to_path(raw.get("desired_state_file")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        download_timeout=_expect_positive_float(
            raw.get("download_timeout"), "download_timeout", default=300.0
        ),
        java=_build_component(raw, "java"),
        tomcat=_build_component(raw, "tomcat"),
        service=service,
        environment=environment,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ComponentConfig",
    "ConfigError",
    "EnvironmentConfig",
    "ServiceConfig",
    "SystemdConfig",
    "load_config",
]
