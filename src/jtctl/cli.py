"""Typer-powered command line for ``jtctl``.

Every mutating command takes the host-wide lock, runs inside a structured
logging operation and maps lifecycle failures onto the exit codes declared in
:mod:`jtctl.exit_codes`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .errors import ConfigError, LifecycleError, NoOpError, UpgradeError
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import Component
from .orchestrator import OrchestrationResult, UpgradeOrchestrator

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to jtctl's YAML config file.",
)

DESIRED_STATE_OPTION = typer.Option(
    None,
    "--desired-state",
    "-d",
    dir_okay=False,
    help="Desired-state descriptor to apply (defaults to the configured file).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Java and Tomcat lifecycle manager.

        Installs, upgrades, rolls back and removes the JDK and the Tomcat
        application server on this host, keeping exactly one version pair
        active at a time.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _orchestrator(runtime: RuntimeContext, desired_state: Path | None) -> UpgradeOrchestrator:
    return UpgradeOrchestrator.from_config(runtime.config, desired_state_file=desired_state)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the jtctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"jtctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _upgrade_errors(exc: UpgradeError) -> list[str]:
    errors = [str(exc)]
    if exc.__cause__ is not None:
        errors.append(f"cause: {exc.__cause__}")
    if exc.compensation_error is not None:
        errors.append(f"compensation: {exc.compensation_error}")
    return errors


def _render_result(result: OrchestrationResult) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("State")
    table.add_column("Version")
    table.add_column("Previous")
    for transition in result.transitions:
        table.add_row(
            transition.component.label,
            transition.state.value,
            transition.version or "-",
            transition.previous_version or "-",
        )
    console.print(table)
    for warning in result.warnings:
        console.print(f"[yellow]{warning}[/yellow]")


def _run_transition(
    ctx: typer.Context,
    command: str,
    *,
    args: Mapping[str, object],
    desired_state: Path | None,
    action: Callable[[UpgradeOrchestrator], OrchestrationResult],
    summary: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args=dict(args),
        target={"kind": "host", "install_root": str(runtime.config.install_root)},
    ) as op:
        try:
            with runtime.locks.mutate_components(
                [component.value for component in Component]
            ) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = action(_orchestrator(runtime, desired_state))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except OSError as exc:
            _command_error(op, f"{command} failed: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except NoOpError as exc:
            console.print(f"[yellow]{exc}[/yellow]")
            op.success(str(exc), changed=0)
            return
        except UpgradeError as exc:
            context = {
                "compensated": exc.compensated,
                "compensation_error": str(exc.compensation_error)
                if exc.compensation_error
                else None,
            }
            console.print(f"[red]{exc}[/red]")
            op.error(str(exc), errors=_upgrade_errors(exc), rc=int(exc.exit_code), context=context)
            raise typer.Exit(code=int(exc.exit_code)) from exc
        except LifecycleError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        for transition in result.transitions:
            for name, detail in transition.steps:
                op.add_step(f"{transition.component.value}.{name}", detail=detail or None)
        _render_result(result)
        if result.warnings:
            op.warning(
                summary,
                warnings=result.warnings,
                changed=len(result.transitions),
                context=result.to_dict(),
            )
        else:
            op.success(summary, changed=len(result.transitions), context=result.to_dict())
        console.print(f"[green]{summary}[/green]")


@app.command()
def install(
    ctx: typer.Context,
    desired_state: Path | None = DESIRED_STATE_OPTION,
) -> None:
    """Install Java and Tomcat from the desired-state descriptor."""
    _run_transition(
        ctx,
        "install",
        args={"desired_state": desired_state},
        desired_state=desired_state,
        action=lambda orchestrator: orchestrator.install(),
        summary="Install completed.",
    )


@app.command()
def upgrade(
    ctx: typer.Context,
    desired_state: Path | None = DESIRED_STATE_OPTION,
) -> None:
    """Upgrade Java and Tomcat to the desired-state versions."""
    _run_transition(
        ctx,
        "upgrade",
        args={"desired_state": desired_state},
        desired_state=desired_state,
        action=lambda orchestrator: orchestrator.upgrade(),
        summary="Upgrade completed.",
    )


@app.command()
def rollback(ctx: typer.Context) -> None:
    """Restore Java and Tomcat from their retained backups."""
    _run_transition(
        ctx,
        "rollback",
        args={},
        desired_state=None,
        action=lambda orchestrator: orchestrator.rollback(),
        summary="Rollback completed.",
    )


@app.command()
def uninstall(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        help="Do not ask for confirmation.",
    ),
) -> None:
    """Remove Java, Tomcat, their backups, units and environment bindings."""
    if not yes:
        typer.confirm("Remove all Java and Tomcat installs and backups?", abort=True)
    _run_transition(
        ctx,
        "uninstall",
        args={"yes": yes},
        desired_state=None,
        action=lambda orchestrator: orchestrator.uninstall(),
        summary="Uninstall completed.",
    )


@app.command()
def status(
    ctx: typer.Context,
    desired_state: Path | None = DESIRED_STATE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show installed, backed-up and desired versions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "host"},
    ) as op:
        payload = _orchestrator(runtime, desired_state).status()
        if json_output:
            console.print_json(data=payload)
            op.success("Rendered status as JSON.", changed=0)
            return

        desired = payload.get("desired") or {}
        previous = payload.get("previous") or {}
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Component", style="bold")
        table.add_column("Installed")
        table.add_column("Backup")
        table.add_column("Desired")
        table.add_column("Previous")
        for key, label, desired_key in (
            ("java", "Java", "java"),
            ("app_server", "Tomcat", "tomcat"),
        ):
            entry = payload[key]
            if not isinstance(entry, dict):
                continue
            installed = ", ".join(entry.get("installed") or []) or "-"
            if not entry.get("consistent", True):
                installed = f"[red]{installed} (inconsistent)[/red]"
            table.add_row(
                label,
                installed,
                str(entry.get("backup") or "-"),
                str(desired.get(desired_key) or "-") if isinstance(desired, dict) else "-",
                str(previous.get(desired_key) or "-") if isinstance(previous, dict) else "-",
            )
        console.print(table)
        for key in ("desired_error", "previous_error"):
            if payload.get(key):
                console.print(f"[yellow]{payload[key]}[/yellow]")
        op.success("Rendered status table.", changed=0)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
