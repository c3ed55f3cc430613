"""Typer-powered command line interface for ``pgforge``.

Every command runs inside a structured operation scope (see
:mod:`pgforge.logging`) and delegates the actual work to
:class:`~pgforge.orchestrator.InstanceOrchestrator`. Failures are printed in
red, recorded in the operations log and mapped to an exit code from
:class:`~pgforge.exit_codes.ExitCode`.
"""
from __future__ import annotations

import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, default_config_document, load_config, write_config_file
from .errors import InvalidSpecError, PgForgeError
from .exit_codes import ExitCode
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger, configure_logging
from .models import InstanceRecord, InstanceState
from .orchestrator import CreateOptions, InstanceOrchestrator
from .ports import PortsRegistryError
from .providers import InstanceStatusProvider
from .system_check import check_requirements, installation_hints
from .validation import RESTART_POLICIES

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to pgforge's YAML config file.",
)
NAME_ARGUMENT = typer.Argument(..., help="Name of the instance.")
OUTPUT_FORMATS = ("table", "json", "yaml")
CONNECTION_FORMATS = ("uri", "env", "json")
_STATE_STYLE = {
    InstanceState.RUNNING: "green",
    InstanceState.STARTING: "cyan",
    InstanceState.STOPPING: "cyan",
    InstanceState.STOPPED: "yellow",
    InstanceState.ERROR: "red",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        pgforge: manage multiple PostgreSQL instances on one host.

        Each instance gets its own data directory, port, generated server
        configuration and application database, and is supervised either
        directly or through a systemd unit.
        """
    ).strip(),
)
service_app = typer.Typer(help="Manage systemd supervision of an instance.")
app.add_typer(service_app, name="service")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    orchestrator: InstanceOrchestrator
    logger: StructuredLogger
    instance_status_provider: InstanceStatusProvider


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    verbose: bool = False,
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

    configure_logging(verbose=verbose)
    runtime = RuntimeContext(
        config=config,
        orchestrator=InstanceOrchestrator.from_config(config),
        logger=StructuredLogger(config.logs_dir),
        instance_status_provider=InstanceStatusProvider(),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the pgforge version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug diagnostics on stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout, verbose)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"pgforge {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout, verbose)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


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


def _pgforge_error(op: OperationScope, exc: PgForgeError) -> NoReturn:
    """Report a typed lifecycle failure and terminate the command."""
    console.print(exc.describe(), style="red", markup=False, highlight=False)
    errors = [str(issue) for issue in exc.issues] if isinstance(exc, InvalidSpecError) else []
    for issue in errors:
        console.print(f"  - {issue}", style="red", markup=False, highlight=False)
    op.error(
        exc.message,
        errors=errors or [str(exc)],
        rc=int(exc.exit_code),
        context=exc.to_dict(),
    )
    raise typer.Exit(code=int(exc.exit_code))


@contextmanager
def _handled(op: OperationScope) -> Iterator[None]:
    """Translate library failures raised inside the block into CLI exits."""
    try:
        yield
    except PgForgeError as exc:
        _pgforge_error(op, exc)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except PortsRegistryError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _validate_choice(op: OperationScope, label: str, value: str, choices: Sequence[str]) -> str:
    normalized = value.strip().lower()
    if normalized not in choices:
        _command_error(op, f"Unsupported {label} '{value}'. Choose one of: {', '.join(choices)}.")
    return normalized


def _styled_state(state: InstanceState) -> str:
    style = _STATE_STYLE.get(state, "white")
    return f"[{style}]{state.value}[/{style}]"


def _public_document(record: InstanceRecord) -> dict[str, object]:
    """Return the record document with the owner password masked."""
    document = record.to_dict()
    spec = document.get("spec")
    if isinstance(spec, dict):
        database = spec.get("database")
        if isinstance(database, dict) and "password" in database:
            database["password"] = "********"
    return document


def _emit_documents(payload: object, output_format: str) -> None:
    if output_format == "json":
        console.print_json(data=payload)
    else:
        console.print(
            yaml.safe_dump(payload, sort_keys=False).rstrip(),
            markup=False,
            highlight=False,
            soft_wrap=True,
        )


def _instance_table(runtime: RuntimeContext, records: Sequence[InstanceRecord]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("Version")
    table.add_column("Port")
    table.add_column("Database")
    table.add_column("Mode")
    table.add_column("Detail")

    if not records:
        table.add_row("(none)", "", "", "", "", "", "")
        return table

    for record in records:
        summary = runtime.instance_status_provider.status(record)
        table.add_row(
            record.name,
            _styled_state(record.status.state),
            record.spec.version,
            str(record.spec.network.port),
            record.spec.database.name,
            "service" if record.service_mode else "direct",
            summary.detail,
        )
    return table


def _details_table(runtime: RuntimeContext, record: InstanceRecord) -> Table:
    spec = record.spec
    status = record.status
    summary = runtime.instance_status_provider.status(record)
    table = Table(show_header=False)
    table.add_row("Name", record.name)
    table.add_row("State", _styled_state(status.state))
    table.add_row("Detail", summary.detail)
    table.add_row("Version", spec.version)
    table.add_row("Port", str(spec.network.port))
    table.add_row("Bind Address", spec.network.bind_address)
    table.add_row("Max Connections", str(spec.network.max_connections))
    table.add_row("Database", spec.database.name)
    table.add_row("Owner", spec.database.owner)
    table.add_row("Data Directory", str(spec.storage.data_directory))
    table.add_row("Log Directory", str(spec.storage.log_directory))
    table.add_row("Socket Directory", str(record.socket_directory))
    table.add_row("Supervision", "service" if record.service_mode else "direct")
    optional_rows = (
        ("PID", status.pid),
        ("Started", status.start_time),
        ("Last Restart", status.last_restart),
        ("Environment", record.metadata.labels.get("environment")),
        ("Created", record.metadata.annotations.get("created")),
    )
    for label, value in optional_rows:
        if value not in (None, ""):
            table.add_row(label, str(value))
    if status.service is not None:
        enabled = "enabled" if status.service.enabled else "disabled"
        table.add_row("Service", f"{status.service.status} ({enabled})")
    return table


# ---------------------------------------------------------------------------
# Setup commands
# ---------------------------------------------------------------------------


@app.command()
def init(ctx: typer.Context) -> None:
    """Write the default configuration and create pgforge's state directories."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "init",
        args={"config_file": str(config.config_file)},
        target={"kind": "config"},
    ) as op:
        created: list[str] = []
        for directory in (
            config.state_dir,
            config.instances_dir,
            config.runtime_dir,
            config.logs_dir,
            config.templates_dir,
        ):
            if directory.exists():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _command_error(
                    op, f"Cannot create {directory}: {exc}", rc=int(ExitCode.ENVIRONMENT)
                )
            created.append(str(directory))
            op.add_step("directory.create", detail=str(directory))

        if config.config_file.exists():
            op.add_step("config.write", status="skipped", detail="exists")
            console.print(f"Configuration already exists at {config.config_file}.")
        else:
            try:
                write_config_file(config.config_file, default_config_document())
            except OSError as exc:
                _command_error(
                    op,
                    f"Cannot write {config.config_file}: {exc}",
                    rc=int(ExitCode.ENVIRONMENT),
                )
            created.append(str(config.config_file))
            op.add_step("config.write", detail=str(config.config_file))
            console.print(f"[green]Wrote default configuration to {config.config_file}.[/green]")

        for path in created:
            console.print(f"  created {path}")
        console.print("Next: [bold]pgforge check[/bold], then [bold]pgforge create <name>[/bold].")
        op.success("Initialised pgforge.", changed=len(created), context={"created": created})


@app.command()
def check(
    ctx: typer.Context,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Show the probed path and any probe error for each requirement.",
    ),
) -> None:
    """Check that the PostgreSQL executables pgforge needs are installed."""
    runtime = _get_runtime(ctx)
    postgres = runtime.config.postgresql
    with runtime.logger.operation(
        "check",
        args={"verbose": verbose},
        target={"kind": "system"},
    ) as op:
        results = check_requirements(
            runtime.orchestrator.locator, postgres.default_version, postgres.min_version
        )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Requirement", style="bold")
        table.add_column("Status")
        table.add_column("Version")
        if verbose:
            table.add_column("Path")
            table.add_column("Error")

        issues: list[str] = []
        for result in results:
            if not result.installed:
                status = "[red]missing[/red]"
                issues.append(f"Missing required dependency: {result.requirement.command}")
            elif result.satisfies_min_version is False:
                status = f"[yellow]requires {postgres.min_version}+[/yellow]"
                issues.append(
                    f"{result.requirement.name} version {result.version} is below "
                    f"{postgres.min_version}"
                )
            else:
                status = "[green]ok[/green]"
            row = [result.requirement.name, status, result.version or ""]
            if verbose:
                row.extend([str(result.path or ""), result.error or ""])
            table.add_row(*row)
            op.add_step(
                f"check.{result.requirement.command}",
                status="success" if result.ok else "error",
                detail=result.to_dict(),
            )

        console.print(table)
        context = {"results": [result.to_dict() for result in results]}
        if not issues:
            console.print("[green]All requirements satisfied.[/green]")
            op.success("System requirements satisfied.", changed=0, context=context)
            return

        hints = installation_hints(postgres.package_manager, postgres.min_version)
        if hints:
            console.print("Install PostgreSQL with:")
            for line in hints:
                console.print(f"  {line}", markup=False, highlight=False)
        _command_error(
            op,
            "System requirements not met.",
            rc=int(ExitCode.ENVIRONMENT),
            errors=issues,
        )


# ---------------------------------------------------------------------------
# Instance lifecycle commands
# ---------------------------------------------------------------------------


@app.command()
def create(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    port: int | None = typer.Option(
        None,
        "--port",
        "-p",
        help="Port to listen on (default: next free port from ports.base).",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        help="PostgreSQL version to use (default: detected or postgresql.default_version).",
    ),
    template: str | None = typer.Option(
        None,
        "--template",
        "-t",
        help="Configuration template to apply (development, production, testing).",
    ),
    file: Path | None = typer.Option(
        None,
        "--file",
        "-f",
        dir_okay=False,
        exists=True,
        help="YAML document with spec values to apply.",
    ),
) -> None:
    """Create and bootstrap a new PostgreSQL instance."""
    runtime = _get_runtime(ctx)
    options = CreateOptions(port=port, version=version, template=template, file=file)
    with runtime.logger.operation(
        "create",
        args={
            "name": name,
            "port": port,
            "version": version,
            "template": template,
            "file": str(file) if file else None,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            record = runtime.orchestrator.create(name, options, op=op)

        spec = record.spec
        console.print(f"[green]Instance '{name}' created.[/green]")
        table = Table(show_header=False)
        table.add_row("Version", spec.version)
        table.add_row("Port", str(spec.network.port))
        table.add_row("Database", spec.database.name)
        table.add_row("Owner", spec.database.owner)
        table.add_row("Password", spec.database.password or "")
        table.add_row("Data Directory", str(spec.storage.data_directory))
        console.print(table)
        console.print(
            "[yellow]Store the owner password now; "
            f"'pgforge connection-string {name} --show-password' prints it again.[/yellow]"
        )
        console.print(f"Next: [bold]pgforge start {name}[/bold]")
        op.success(
            "Instance created.",
            changed=1,
            context={"port": spec.network.port, "version": spec.version},
        )


@app.command("list")
def list_instances(
    ctx: typer.Context,
    status: str | None = typer.Option(
        None,
        "--status",
        help="Only show instances in this state (running, stopped, error, ...).",
    ),
    output_format: str = typer.Option(
        "table",
        "--format",
        help="Output format (table|json|yaml).",
    ),
) -> None:
    """List known instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"status": status, "format": output_format},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        fmt = _validate_choice(op, "format", output_format, OUTPUT_FORMATS)
        state: InstanceState | None = None
        if status:
            states = tuple(member.value for member in InstanceState)
            state = InstanceState(_validate_choice(op, "status", status, states))

        with _handled(op):
            records = runtime.orchestrator.list(state=state, op=op)

        if fmt == "table":
            console.print(_instance_table(runtime, records))
        else:
            _emit_documents([_public_document(record) for record in records], fmt)
        op.success("Reported instance list.", changed=0, context={"count": len(records)})


@app.command()
def show(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the record as JSON instead of a table.",
    ),
) -> None:
    """Show the record of one instance, its status checked against reality."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            record = runtime.orchestrator.status(name, op=op)

        if json_output:
            console.print_json(data=_public_document(record))
        else:
            console.print(_details_table(runtime, record))
        op.success("Displayed instance details.", changed=0)


@app.command()
def status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Instance to query (default: all)."),
) -> None:
    """Report instance state, correcting stale records against reality."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name},
        target={"kind": "instance", "name": name} if name else {"kind": "instance"},
    ) as op:
        orchestrator = runtime.orchestrator
        with _handled(op):
            if name is not None:
                record = orchestrator.status(name, op=op)
                console.print(_details_table(runtime, record))
                op.success(
                    "Reported instance status.",
                    changed=0,
                    context={"state": record.status.state.value},
                )
                return
            records = orchestrator.list(op=op)

        console.print(_instance_table(runtime, records))
        op.success("Reported status of all instances.", changed=0, context={"count": len(records)})


@app.command()
def start(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Start a stopped instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "start",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            record = runtime.orchestrator.start(name, op=op)
        pid = f" (pid {record.status.pid})" if record.status.pid else ""
        console.print(f"[green]Instance '{name}' started{pid}.[/green]")
        spec = record.spec
        console.print(
            f"  psql -h {record.socket_directory} -p {spec.network.port} "
            f"-U {spec.database.owner} -d {spec.database.name}",
            markup=False,
            highlight=False,
        )
        op.success("Instance started.", changed=1, context={"pid": record.status.pid})


@app.command()
def stop(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Stop a running instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            runtime.orchestrator.stop(name, op=op)
        console.print(f"[yellow]Instance '{name}' stopped.[/yellow]")
        op.success("Instance stopped.", changed=1)


@app.command()
def restart(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Restart an instance (stop when running, then start)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restart",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            record = runtime.orchestrator.restart(name, op=op)
        console.print(f"[green]Instance '{name}' restarted.[/green]")
        op.success("Instance restarted.", changed=2, context={"pid": record.status.pid})


@app.command()
def remove(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    backup: bool = typer.Option(
        False,
        "--backup",
        help="Request a backup before removing the record.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Stop a running instance instead of refusing.",
    ),
) -> None:
    """Forget an instance. Data and log directories are left on disk."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={"name": name, "backup": backup, "force": force},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            result = runtime.orchestrator.remove(name, backup=backup, force=force, op=op)

        console.print(f"[green]Instance '{name}' removed.[/green]")
        console.print("Data directories were not removed. Remove manually if needed:")
        console.print(f"  Data: {result.data_directory}", markup=False, highlight=False)
        console.print(f"  Logs: {result.log_directory}", markup=False, highlight=False)
        context = {
            "data_directory": result.data_directory,
            "log_directory": result.log_directory,
            "stopped": result.stopped,
            "service_removed": result.service_removed,
        }
        if result.warnings:
            for warning in result.warnings:
                console.print(f"[yellow]{warning}[/yellow]")
            op.warning(
                "Instance removed with warnings.",
                warnings=list(result.warnings),
                changed=1,
                context=context,
            )
            return
        op.success("Instance removed.", changed=1, context=context)


@app.command("connection-string")
def connection_string(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    output_format: str = typer.Option(
        "uri",
        "--format",
        help="Output format (uri|env|json).",
    ),
    show_password: bool = typer.Option(
        False,
        "--show-password",
        help="Include the owner password (env and json formats).",
    ),
) -> None:
    """Print client connection parameters for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "connection-string",
        args={"name": name, "format": output_format, "show_password": show_password},
        target={"kind": "instance", "name": name},
    ) as op:
        fmt = _validate_choice(op, "format", output_format, CONNECTION_FORMATS)
        with _handled(op):
            info = runtime.orchestrator.connection_info(name)

        if fmt == "json":
            console.print_json(data=info.to_dict(include_password=show_password))
        elif fmt == "env":
            env = info.to_env()
            if not show_password:
                env.pop("PGPASSWORD", None)
            for key, value in env.items():
                console.print(f"{key}={value}", markup=False, highlight=False, soft_wrap=True)
        else:
            console.print(info.uri, markup=False, highlight=False, soft_wrap=True)
        op.success("Reported connection parameters.", changed=0)


# ---------------------------------------------------------------------------
# Service supervision commands
# ---------------------------------------------------------------------------


@service_app.command("enable")
def service_enable(
    ctx: typer.Context,
    name: str = NAME_ARGUMENT,
    restart_policy: str = typer.Option(
        "on-failure",
        "--restart-policy",
        help=f"systemd Restart= policy ({'|'.join(RESTART_POLICIES)}).",
    ),
    restart_sec: int = typer.Option(
        5,
        "--restart-sec",
        min=0,
        help="Seconds systemd waits before restarting the server.",
    ),
    auto_start: bool = typer.Option(
        False,
        "--auto-start/--no-auto-start",
        help="Start the service immediately after enabling it.",
    ),
    user_mode: bool | None = typer.Option(
        None,
        "--user/--system",
        help="Install a per-user unit (default: systemd.user_mode).",
    ),
) -> None:
    """Install a systemd unit for an instance and switch it to service mode."""
    runtime = _get_runtime(ctx)
    resolved_user_mode = runtime.config.systemd.user_mode if user_mode is None else user_mode
    with runtime.logger.operation(
        "service enable",
        args={
            "name": name,
            "restart_policy": restart_policy,
            "restart_sec": restart_sec,
            "auto_start": auto_start,
            "user_mode": resolved_user_mode,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            change = runtime.orchestrator.enable_service(
                name,
                restart_policy=restart_policy,
                restart_sec=restart_sec,
                auto_start=auto_start,
                user_mode=resolved_user_mode,
                op=op,
            )
        console.print(f"[green]Service enabled for '{name}'.[/green]")
        console.print(f"  Unit: {change.unit_path}", markup=False, highlight=False)
        if change.started:
            console.print(f"[green]Instance '{name}' started via systemd.[/green]")
        op.success(
            "Service enabled.",
            changed=2 if change.started else 1,
            context={"unit_path": change.unit_path, "unit_changed": change.unit_changed},
        )


@service_app.command("disable")
def service_disable(ctx: typer.Context, name: str = NAME_ARGUMENT) -> None:
    """Remove the systemd unit of an instance and return it to direct supervision."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "service disable",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        with _handled(op):
            change = runtime.orchestrator.disable_service(name, op=op)
        console.print(f"[yellow]Service disabled for '{name}'.[/yellow]")
        op.success(
            "Service disabled.",
            changed=1,
            context={"unit_path": change.unit_path, "unit_removed": change.unit_changed},
        )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@app.command("config")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of YAML.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data: Mapping[str, object] = runtime.config.to_dict()
    with runtime.logger.operation(
        "config",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        _emit_documents(dict(data), "json" if json_output else "yaml")
        op.success("Rendered configuration.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
