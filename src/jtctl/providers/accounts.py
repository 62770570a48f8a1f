"""Service account provisioning and ownership for the application server."""
from __future__ import annotations

import grp
import logging
import os
import pwd
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LOGGER = logging.getLogger(__name__)


class AccountError(RuntimeError):
    """Raised when the service account or file ownership cannot be ensured."""


@dataclass(slots=True)
class ServiceAccountSpec:
    """Desired attributes for the application-server service account."""

    name: str
    group: str | None = None
    system: bool = True
    create_group: bool = True
    home: Path | None = None
    shell: str | None = "/bin/false"


@dataclass(slots=True)
class ServiceAccountStatus:
    """Current state of the service account on the host."""

    user_exists: bool
    group_exists: bool
    uid: int | None = None
    gid: int | None = None
    primary_group: str | None = None


@dataclass(slots=True)
class ServiceAccountAction:
    """Single remediation step required to satisfy the desired state."""

    kind: Literal["ensure-group", "create-user"]
    description: str
    command: list[str]


@dataclass(slots=True)
class ServiceAccountPlan:
    """Aggregated actions and warnings required to satisfy the spec."""

    spec: ServiceAccountSpec
    status: ServiceAccountStatus
    actions: list[ServiceAccountAction] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def inspect_service_account(spec: ServiceAccountSpec) -> ServiceAccountStatus:
    """Return the current status for *spec* from system passwd/group databases."""
    try:
        pw_entry = pwd.getpwnam(spec.name)
        user_exists = True
        uid: int | None = pw_entry.pw_uid
        gid: int | None = pw_entry.pw_gid
        try:
            primary_group: str | None = grp.getgrgid(pw_entry.pw_gid).gr_name
        except KeyError:
            primary_group = None
    except KeyError:
        user_exists = False
        uid = None
        gid = None
        primary_group = None

    group_exists = False
    if spec.group:
        try:
            grp.getgrnam(spec.group)
        except KeyError:
            pass
        else:
            group_exists = True

    return ServiceAccountStatus(
        user_exists=user_exists,
        group_exists=group_exists,
        uid=uid,
        gid=gid,
        primary_group=primary_group,
    )


def plan_service_account(spec: ServiceAccountSpec) -> ServiceAccountPlan:
    """Return a plan describing how to satisfy *spec* on the current host."""
    status = inspect_service_account(spec)
    plan = ServiceAccountPlan(spec=spec, status=status)

    if spec.group and not status.group_exists:
        if spec.create_group:
            command = ["groupadd"]
            if spec.system:
                command.append("--system")
            command.append(spec.group)
            plan.actions.append(
                ServiceAccountAction(
                    kind="ensure-group",
                    description=f"Create group '{spec.group}'.",
                    command=command,
                )
            )
        else:
            plan.warnings.append(f"Group '{spec.group}' is missing and create_group is False.")

    if not status.user_exists:
        command = ["useradd"]
        if spec.system:
            command.append("--system")
        if spec.home:
            command.extend(["--home", str(spec.home)])
        else:
            command.append("--no-create-home")
        if spec.shell:
            command.extend(["--shell", spec.shell])
        if spec.group:
            command.extend(["--gid", spec.group])
        command.append(spec.name)
        plan.actions.append(
            ServiceAccountAction(
                kind="create-user",
                description=f"Create service user '{spec.name}'.",
                command=command,
            )
        )
    elif spec.group and status.primary_group and status.primary_group != spec.group:
        plan.warnings.append(
            f"User '{spec.name}' primary group is '{status.primary_group}', "
            f"expected '{spec.group}'."
        )

    return plan


Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=True, capture_output=True, text=True)  # noqa: S603,S607


class ServiceAccountManager:
    """Ensure the service account exists and owns an install tree."""

    def __init__(
        self,
        spec: ServiceAccountSpec,
        *,
        runner: Runner | None = None,
        manage_account: bool = True,
        dry_run: bool = False,
    ) -> None:
        """Configure the account to manage and how commands are executed."""
        self.spec = spec
        self.runner = runner or _default_runner
        self.manage_account = manage_account
        self.dry_run = dry_run

    def ensure_account(self) -> ServiceAccountPlan:
        """Create the group and user when missing."""
        plan = plan_service_account(self.spec)
        for warning in plan.warnings:
            LOGGER.warning(warning)
        if not self.manage_account or self.dry_run:
            return plan
        for action in plan.actions:
            LOGGER.info(action.description)
            try:
                self.runner(action.command)
            except (subprocess.CalledProcessError, FileNotFoundError) as exc:
                raise AccountError(f"{action.description} failed: {exc}") from exc
        return plan

    def apply_ownership(self, root: Path) -> None:
        """Chown *root* to the account, chmod 0755 and mark ``bin/*.sh`` executable."""
        if self.dry_run:
            return
        uid, gid = self._resolve_ids()
        try:
            for path in [root, *root.rglob("*")]:
                if path.is_symlink():
                    continue
                if uid is not None:
                    os.chown(path, uid, gid if gid is not None else -1)
                os.chmod(path, 0o755)
            for script in (root / "bin").glob("*.sh"):
                script.chmod(0o755)
        except OSError as exc:
            raise AccountError(f"Failed to set ownership on {root}: {exc}") from exc

    def _resolve_ids(self) -> tuple[int | None, int | None]:
        if not self.manage_account:
            return None, None
        status = inspect_service_account(self.spec)
        if not status.user_exists:
            raise AccountError(f"Service user '{self.spec.name}' does not exist.")
        gid = status.gid
        if self.spec.group:
            try:
                gid = grp.getgrnam(self.spec.group).gr_gid
            except KeyError:
                gid = status.gid
        return status.uid, gid


__all__ = [
    "AccountError",
    "ServiceAccountAction",
    "ServiceAccountManager",
    "ServiceAccountPlan",
    "ServiceAccountSpec",
    "ServiceAccountStatus",
    "inspect_service_account",
    "plan_service_account",
]
