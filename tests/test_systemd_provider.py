"""Tests for the systemd unit manager."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from jtctl.errors import ServiceActivationError
from jtctl.providers.systemd import ServiceUnitManager, SystemdError
from jtctl.templates import TemplateEngine

from conftest import SystemctlRecorder


def _make_manager(tmp_path: Path, **kwargs: object) -> ServiceUnitManager:
    return ServiceUnitManager(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        **kwargs,  # type: ignore[arg-type]
    )


def _write(manager: ServiceUnitManager, version: str) -> bool:
    return manager.write(
        version,
        java_home=Path("/opt/openjdk-21"),
        catalina_home=Path(f"/opt/tomcat-{version}"),
    )


def test_write_renders_unit(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """Unit files are rendered with mode 0644 and rewritten only on change."""
    manager = _make_manager(tmp_path, service_user="appsrv", restart_policy="on-failure")

    assert _write(manager, "10.1.34") is True
    path = tmp_path / "systemd" / "tomcat-10.1.34.service"
    content = path.read_text()
    assert "Description=Apache Tomcat 10.1.34" in content
    assert "User=appsrv" in content
    assert 'Environment="JAVA_HOME=/opt/openjdk-21"' in content
    assert "ExecStart=/opt/tomcat-10.1.34/bin/catalina.sh run" in content
    assert "Restart=on-failure" in content
    assert path.stat().st_mode & 0o777 == 0o644
    assert _write(manager, "10.1.34") is False
    assert systemctl.calls == []


def test_activate_reloads_enables_and_restarts(
    tmp_path: Path,
    systemctl: SystemctlRecorder,
) -> None:
    """Activation runs daemon-reload, enable, then restart."""
    manager = _make_manager(tmp_path)
    _write(manager, "10.1.34")

    manager.activate("10.1.34")

    assert systemctl.calls == [
        ("daemon-reload", None),
        ("enable", "tomcat-10.1.34.service"),
        ("restart", "tomcat-10.1.34.service"),
    ]


def test_activate_requires_unit_file(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """Activating a version without a unit file fails before calling systemctl."""
    manager = _make_manager(tmp_path)

    with pytest.raises(ServiceActivationError, match="missing"):
        manager.activate("10.1.34")
    assert systemctl.calls == []


def test_activate_failure_is_wrapped(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """A failing restart surfaces as ServiceActivationError."""
    manager = _make_manager(tmp_path)
    _write(manager, "10.1.34")
    systemctl.fail_on.add(("restart", "tomcat-10.1.34.service"))

    with pytest.raises(ServiceActivationError, match="Failed to activate tomcat-10.1.34"):
        manager.activate("10.1.34")


def test_prune_others_keeps_one_unit(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """Every other unit is stopped, disabled and deleted."""
    manager = _make_manager(tmp_path)
    for version in ("9.0.80", "10.1.34", "10.1.40"):
        _write(manager, version)
    systemctl.fail_on.add(("stop", "tomcat-9.0.80.service"))

    removed = manager.prune_others("10.1.40")

    assert removed == ["9.0.80", "10.1.34"]
    assert manager.installed_versions() == ["10.1.40"]
    assert systemctl.calls == [
        ("stop", "tomcat-9.0.80.service"),
        ("disable", "tomcat-9.0.80.service"),
        ("stop", "tomcat-10.1.34.service"),
        ("disable", "tomcat-10.1.34.service"),
        ("daemon-reload", None),
    ]


def test_deactivate_and_remove_all(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """Deactivation keeps unit files; removal deletes them."""
    manager = _make_manager(tmp_path)
    _write(manager, "10.1.34")

    assert manager.deactivate_all() == ["10.1.34"]
    assert manager.installed_versions() == ["10.1.34"]
    assert manager.remove_all() == ["10.1.34"]
    assert manager.installed_versions() == []
    assert manager.remove_all() == []
    assert systemctl.calls[-1] == ("daemon-reload", None)


def test_status_reports_is_active(tmp_path: Path, systemctl: SystemctlRecorder) -> None:
    """Status does not raise on inactive units."""
    manager = _make_manager(tmp_path)
    systemctl.fail_on.add(("is-active", "tomcat-10.1.34.service"))

    result = manager.status("10.1.34")

    assert result.returncode == 1


def test_dry_run_skips_subprocess(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Dry runs never execute systemctl."""

    def forbidden(*args: object, **kwargs: object) -> None:
        raise AssertionError("subprocess.run should not be called")

    monkeypatch.setattr(subprocess, "run", forbidden)
    manager = _make_manager(tmp_path, dry_run=True)

    assert manager.status("10.1.34").returncode == 0


def test_missing_systemctl_binary(tmp_path: Path) -> None:
    """A missing systemctl binary raises SystemdError."""
    manager = _make_manager(tmp_path, systemctl_bin=str(tmp_path / "no-such-systemctl"))

    with pytest.raises(SystemdError, match="not found"):
        manager._systemctl("daemon-reload")  # type: ignore[attr-defined]


def test_nonzero_exit_raises_with_stderr(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Checked commands report stderr when systemctl fails."""

    def fake_run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, returncode=5, stdout="", stderr="Unit not loaded.")

    monkeypatch.setattr(subprocess, "run", fake_run)
    manager = _make_manager(tmp_path)

    with pytest.raises(SystemdError, match=r"enable failed \(exit 5\): Unit not loaded"):
        manager._systemctl("enable", "tomcat-1.service")  # type: ignore[attr-defined]
