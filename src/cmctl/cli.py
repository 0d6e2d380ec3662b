"""Typer-powered command line interface for ``cmctl``.

Every command runs inside a structured operation scope so that a JSON line is
appended to ``operations.jsonl`` describing what was requested and how it
ended. Reconciliation commands print the computed plan as a table, apply it
through the busy-state coordinator and finish with a summary of the outcome.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import textwrap
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .codec import (
    CodecError,
    DecryptionError,
    EncryptedValueNotAllowedForPlainVariable,
    MissingEncryptionKey,
    SecretCodec,
    load_key_material,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logfiles import (
    TAIL_INTERVAL,
    LogName,
    LogService,
    follow_log,
    log_filename,
    save_log,
)
from .logging import OperationScope, StructuredLogger, configure_logging
from .manifest import Manifest, ManifestError, load_manifest
from .providers import AuthError, CloudManagerGateway, build_gateway
from .reconcile import (
    ActionKind,
    BusyStateCoordinator,
    CancelToken,
    DesiredDomain,
    GatewayDispatcher,
    PlanValidationError,
    PreflightError,
    ReconcileEngine,
    ReconciliationAction,
    RemoteError,
    RemoteErrorKind,
    ResourceKind,
    ResourceRef,
    ResultStatus,
    RunOutcome,
    plan_certificates,
    plan_domains,
    preflight,
)

LOGGER = logging.getLogger(__name__)

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cmctl's YAML config file.",
)
PROGRAM_OPTION = typer.Option(
    None,
    "--program",
    "-p",
    envvar="CMCTL_PROGRAM_ID",
    help="Program id to operate on.",
)
ENVIRONMENT_OPTION = typer.Option(
    None,
    "--env",
    "-e",
    envvar="CMCTL_ENVIRONMENT_ID",
    help="Environment id to operate on.",
)
PIPELINE_OPTION = typer.Option(
    None,
    "--pipeline",
    "-i",
    envvar="CMCTL_PIPELINE_ID",
    help="Pipeline id to operate on.",
)
CI_OPTION = typer.Option(
    False,
    "--ci",
    help="Skip busy resources instead of waiting for them.",
)
DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show the plan without changing anything.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)
INPUT_FILE_ARGUMENT = typer.Argument(
    ...,
    exists=False,
    dir_okay=False,
    help="YAML file describing the desired state.",
)
LOG_SERVICE_OPTION = typer.Option(
    ...,
    "--service",
    "-s",
    case_sensitive=False,
    help="Service whose log to read.",
)
LOG_NAME_OPTION = typer.Option(
    ...,
    "--log",
    "-l",
    case_sensitive=False,
    help="Log file to read.",
)

VALIDATION_ERRORS: tuple[type[Exception], ...] = (
    ManifestError,
    PlanValidationError,
    PreflightError,
    DecryptionError,
    EncryptedValueNotAllowedForPlainVariable,
)
ENVIRONMENT_ERRORS: tuple[type[Exception], ...] = (
    ConfigError,
    MissingEncryptionKey,
    AuthError,
)
CLI_ERRORS: tuple[type[Exception], ...] = (
    *VALIDATION_ERRORS,
    *ENVIRONMENT_ERRORS,
    CodecError,
    RemoteError,
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Adobe Cloud Manager command line client.

        Reconciles environment and pipeline variables, domain names and
        certificates from YAML files, and drives pipelines from CI jobs.
        """
    ).strip(),
)


@dataclass(frozen=True)
class GlobalOptions:
    """Selectors and switches given before the subcommand."""

    program_id: int | None = None
    environment_id: int | None = None
    pipeline_id: int | None = None
    ci: bool = False
    dry_run: bool = False


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    codec: SecretCodec
    options: GlobalOptions
    cancel_token: CancelToken = field(default_factory=CancelToken)
    _gateway: CloudManagerGateway | None = None

    def gateway(self) -> CloudManagerGateway:
        """Return the API gateway, authenticating lazily on first use."""
        if self._gateway is None:
            self._gateway = build_gateway(self.config)
        return self._gateway

    def close(self) -> None:
        """Close the API gateway if a command opened one."""
        if self._gateway is not None:
            self._gateway.close()
            self._gateway = None

    def coordinator(self) -> BusyStateCoordinator:
        gateway = self.gateway()
        return BusyStateCoordinator(
            gateway,
            GatewayDispatcher(gateway, self.codec),
            poll_interval=self.config.coordination.poll_interval,
            max_wait=self.config.coordination.max_wait,
            cancel_token=self.cancel_token,
            notify=_notify_wait,
        )

    def engine(self) -> tuple[ReconcileEngine, BusyStateCoordinator]:
        coordinator = self.coordinator()
        return ReconcileEngine(self.gateway(), coordinator, self.codec), coordinator


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    options: GlobalOptions | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    config = load_config(config_file=config_file)
    configure_logging(config.log_level)
    logger = StructuredLogger(config.logs_dir)
    codec = SecretCodec(load_key_material(os.environ, config.crypt_key_file))
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        codec=codec,
        options=options or GlobalOptions(),
    )
    ctx.obj = runtime
    ctx.call_on_close(runtime.close)
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the cmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    program: int | None = PROGRAM_OPTION,
    env: int | None = ENVIRONMENT_OPTION,
    pipeline: int | None = PIPELINE_OPTION,
    ci: bool = CI_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    options = GlobalOptions(
        program_id=program,
        environment_id=env,
        pipeline_id=pipeline,
        ci=ci,
        dry_run=dry_run,
    )
    try:
        runtime = _ensure_runtime(ctx, config_file, options)
    except (ConfigError, CodecError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"cmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def main() -> None:
    """Console script entry point."""
    app()


# ----------------------------------------------------------------------
# Helpers


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, VALIDATION_ERRORS):
        return ExitCode.VALIDATION
    if isinstance(exc, ENVIRONMENT_ERRORS):
        return ExitCode.ENVIRONMENT
    if isinstance(exc, CodecError):
        return ExitCode.VALIDATION
    return ExitCode.PROVIDER


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    errors = [str(exc)]
    context: dict[str, object] = {}
    if isinstance(exc, PreflightError):
        errors = [str(issue) for issue in exc.issues]
        context["preflight"] = [report.to_dict() for report in exc.reports]
    _command_error(op, str(exc), rc=_exit_code_for(exc), errors=errors, context=context)


def _require(op: OperationScope, value: int | None, flag: str) -> int:
    if value is None:
        _command_error(op, f"Missing required option {flag}.", rc=ExitCode.VALIDATION)
    return value


def _notify_wait(message: str) -> None:
    console.print(f"[yellow]{message}[/yellow]")


@contextmanager
def _interrupt_cancels(token: CancelToken) -> Iterator[None]:
    """Route Ctrl-C into *token* while a reconciliation runs."""

    def _handler(signum: int, frame: object) -> None:
        console.print("[yellow]Interrupt received; stopping after the current action.[/yellow]")
        token.cancel()

    installed = False
    previous: Any = None
    try:
        previous = signal.signal(signal.SIGINT, _handler)
        installed = True
    except ValueError:  # not on the main thread
        LOGGER.debug("SIGINT handler not installed outside the main thread.")
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous)


def _load_selected_manifest(runtime: RuntimeContext, path: Path) -> Manifest:
    options = runtime.options
    return load_manifest(path).select(
        program_id=options.program_id,
        environment_id=options.environment_id,
        pipeline_id=options.pipeline_id,
    )


def _render_table(columns: Sequence[str], rows: Sequence[Sequence[object]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    for index, column in enumerate(columns):
        table.add_column(column, style="bold" if index == 0 else None)
    if not rows:
        table.add_row("(none)", *([""] * (len(columns) - 1)))
    for row in rows:
        table.add_row(*("" if value is None else str(value) for value in row))
    console.print(table)


def _render_listing(
    op: OperationScope,
    *,
    key: str,
    items: Sequence[Mapping[str, Any]],
    columns: Sequence[tuple[str, str]],
    json_output: bool,
) -> None:
    if json_output:
        console.print_json(data={key: list(items)})
        op.success(f"Reported {key} as JSON.", changed=0, context={"count": len(items)})
        return
    rows = [[item.get(field_name) for field_name, _ in columns] for item in items]
    _render_table([label for _, label in columns], rows)
    op.success(f"Reported {key}.", changed=0, context={"count": len(items)})


_ACTION_STYLES = {
    ActionKind.CREATE: "[green]create[/green]",
    ActionKind.UPDATE: "[cyan]update[/cyan]",
    ActionKind.SKIP: "[dim]skip[/dim]",
    ActionKind.DEFERRED: "[yellow]deferred[/yellow]",
    ActionKind.FAILED: "[red]failed[/red]",
}

_STATUS_STYLES = {
    ResultStatus.SUCCEEDED: "[green]succeeded[/green]",
    ResultStatus.SKIPPED: "[dim]unchanged[/dim]",
    ResultStatus.PLANNED: "[yellow]planned[/yellow]",
    ResultStatus.DEFERRED: "[yellow]deferred[/yellow]",
    ResultStatus.FAILED: "[red]failed[/red]",
}


def _render_plan(title: str, plan: Sequence[ReconciliationAction]) -> None:
    console.print(f"[bold]{title}[/bold]")
    table = Table("Entity", "Action", "Detail", show_header=True, header_style="bold magenta")
    if not plan:
        table.add_row("(none)", "", "")
    for action in plan:
        table.add_row(action.identifier, _ACTION_STYLES[action.kind], action.reason or "")
    console.print(table)


def _finish_run(
    op: OperationScope,
    outcome: RunOutcome,
    *,
    dry_run: bool,
    context: Mapping[str, object] | None = None,
) -> None:
    """Print the outcome summary, record it and exit with the derived code."""
    details = [record for record in outcome.records if record.status is not ResultStatus.SKIPPED]
    if details:
        table = Table("Entity", "Result", "Message", show_header=True, header_style="bold magenta")
        for record in details:
            table.add_row(record.key, _STATUS_STYLES[record.status], record.message)
        console.print(table)

    totals = outcome.totals()
    summary = ", ".join(f"{name}={count}" for name, count in totals.items())
    payload = {**dict(context or {}), "outcome": outcome.to_dict()}

    if dry_run:
        _dry_run_complete(op, summary, context=payload)
        return

    console.print(f"Summary: {summary}")
    if outcome.deferred:
        console.print(
            "[yellow]Some resources were busy and skipped because --ci is active: "
            f"{', '.join(sorted(outcome.deferred))}[/yellow]"
        )
    if outcome.failed:
        errors = [f"{identifier}: {cause.value}" for identifier, cause in outcome.failed.items()]
        message = f"{len(outcome.failed)} entity(ies) failed."
        console.print(f"[red]{message}[/red]")
        op.error(message, errors=errors, rc=int(outcome.exit_code), changed=outcome.changed, context=payload)
        raise typer.Exit(code=int(outcome.exit_code))
    if outcome.deferred:
        op.warning(
            "Completed with deferred resources.",
            warnings=[f"{identifier}: deferred" for identifier in sorted(outcome.deferred)],
            changed=outcome.changed,
            context=payload,
        )
        return
    op.success("Reconciliation complete.", changed=outcome.changed, context=payload)


def _apply_variable_manifest(
    runtime: RuntimeContext,
    op: OperationScope,
    targets: Sequence[tuple[ResourceRef, Sequence[Any]]],
) -> None:
    engine, coordinator = runtime.engine()
    plans: list[tuple[ResourceRef, list[ReconciliationAction]]] = []
    for resource, desired in targets:
        plan = engine.plan_resource(resource, desired)
        _render_plan(str(resource), plan)
        plans.append((resource, plan))

    dry_run = runtime.options.dry_run
    if not dry_run:
        engine.ensure_key_available([action for _, plan in plans for action in plan])

    outcome = RunOutcome()
    with _interrupt_cancels(runtime.cancel_token):
        for _, plan in plans:
            engine.apply_plan(plan, ci_mode=runtime.options.ci, dry_run=dry_run, outcome=outcome)
            if coordinator.cancelled:
                break
    _finish_run(op, outcome, dry_run=dry_run, context={"resources": [str(r) for r, _ in plans]})


# ----------------------------------------------------------------------
# Secret codec


@app.command()
def encrypt(
    ctx: typer.Context,
    value: str = typer.Argument(..., help="Plaintext to encrypt."),
) -> None:
    """Encrypt VALUE for use as a secretString in YAML input."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "encrypt",
        args={"value": "<redacted>"},
        target={"kind": "codec"},
    ) as op:
        try:
            console.print(runtime.codec.encrypt(value), soft_wrap=True, highlight=False)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        op.success("Encrypted value.", changed=0)


@app.command()
def decrypt(
    ctx: typer.Context,
    value: str = typer.Argument(..., help="Encrypted value, with or without the $enc marker."),
) -> None:
    """Decrypt VALUE and print the plaintext."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "decrypt",
        args={"value": "<redacted>"},
        target={"kind": "codec"},
    ) as op:
        try:
            console.print(runtime.codec.decrypt(value), soft_wrap=True, highlight=False, markup=False)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        op.success("Decrypted value.", changed=0)


# ----------------------------------------------------------------------
# Sub-applications

access_token_app = typer.Typer(help="Inspect the IMS access token.")
programs_app = typer.Typer(help="Inspect programs.")
environments_app = typer.Typer(help="Inspect environments and manage their variables.")
environment_vars_app = typer.Typer(help="List and reconcile environment variables.")
pipelines_app = typer.Typer(help="Inspect and drive pipelines.")
pipeline_vars_app = typer.Typer(help="List and reconcile pipeline variables.")
domains_app = typer.Typer(help="List and register domain names.")
certificates_app = typer.Typer(help="List and manage SSL certificates.")
log_app = typer.Typer(help="Download and tail environment logs.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(access_token_app, name="access-token")
app.add_typer(programs_app, name="program")
app.add_typer(environments_app, name="env")
environments_app.add_typer(environment_vars_app, name="vars")
app.add_typer(pipelines_app, name="pipeline")
pipelines_app.add_typer(pipeline_vars_app, name="vars")
app.add_typer(domains_app, name="domain")
app.add_typer(certificates_app, name="certificate")
app.add_typer(log_app, name="log")
app.add_typer(config_app, name="config")


@access_token_app.command("print")
def access_token_print(ctx: typer.Context) -> None:
    """Print a fresh access token."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("access-token print", target={"kind": "auth"}) as op:
        try:
            token = runtime.gateway().access_token()
        except CLI_ERRORS as exc:
            _fail(op, exc)
        console.print(token, soft_wrap=True, highlight=False, markup=False)
        op.success("Printed access token.", changed=0)


@programs_app.command("list")
def program_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List programs visible to the technical account."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "program list",
        args={"json": json_output},
        target={"kind": "program"},
    ) as op:
        try:
            items = runtime.gateway().list_programs()
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="programs",
            items=items,
            columns=[("id", "ID"), ("name", "Name"), ("enabled", "Enabled")],
            json_output=json_output,
        )


@environments_app.command("list")
def environment_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the environments of --program."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env list",
        args={"json": json_output},
        target={"kind": "program", "id": runtime.options.program_id},
    ) as op:
        program_id = _require(op, runtime.options.program_id, "--program")
        try:
            items = runtime.gateway().list_environments(program_id)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="environments",
            items=items,
            columns=[("id", "ID"), ("name", "Name"), ("type", "Type"), ("status", "Status")],
            json_output=json_output,
        )


def _variable_rows(variables: Sequence[Any]) -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for variable in variables:
        rows.append(
            {
                "name": variable.name,
                "type": variable.kind.value,
                "service": variable.scope or "all",
                "value": variable.value if variable.value is not None else "********",
            }
        )
    return rows


_VARIABLE_COLUMNS = [("name", "Name"), ("type", "Type"), ("service", "Service"), ("value", "Value")]


@environment_vars_app.command("list")
def environment_vars_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the variables of --env."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "env vars list",
        args={"json": json_output},
        target={"kind": "environment", "program": options.program_id, "id": options.environment_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        environment_id = _require(op, options.environment_id, "--env")
        resource = ResourceRef(ResourceKind.ENVIRONMENT, program_id, environment_id)
        try:
            variables = runtime.gateway().fetch_variables(resource)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="variables",
            items=_variable_rows(variables),
            columns=_VARIABLE_COLUMNS,
            json_output=json_output,
        )


@environment_vars_app.command("set")
def environment_vars_set(ctx: typer.Context, file: Path = INPUT_FILE_ARGUMENT) -> None:
    """Reconcile environment variables from FILE."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "env vars set",
        args={"file": str(file), "ci": options.ci, "dry_run": options.dry_run},
        target={"kind": "environment", "program": options.program_id, "id": options.environment_id},
    ) as op:
        try:
            manifest = _load_selected_manifest(runtime, file)
            targets = [
                (entry.resource, entry.variables)
                for entry in manifest.environments()
                if entry.variables
            ]
            _apply_variable_manifest(runtime, op, targets)
        except CLI_ERRORS as exc:
            _fail(op, exc)


@pipelines_app.command("list")
def pipeline_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the pipelines of --program."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "pipeline list",
        args={"json": json_output},
        target={"kind": "program", "id": runtime.options.program_id},
    ) as op:
        program_id = _require(op, runtime.options.program_id, "--program")
        try:
            items = runtime.gateway().list_pipelines(program_id)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="pipelines",
            items=items,
            columns=[("id", "ID"), ("name", "Name"), ("status", "Status")],
            json_output=json_output,
        )


@pipelines_app.command("list-executions")
def pipeline_list_executions(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the executions of --pipeline."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "pipeline list-executions",
        args={"json": json_output},
        target={"kind": "pipeline", "program": options.program_id, "id": options.pipeline_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        pipeline_id = _require(op, options.pipeline_id, "--pipeline")
        try:
            items = runtime.gateway().list_executions(program_id, pipeline_id)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="executions",
            items=items,
            columns=[
                ("id", "ID"),
                ("status", "Status"),
                ("trigger", "Trigger"),
                ("user", "User"),
                ("createdAt", "Created"),
            ],
            json_output=json_output,
        )


def _pipeline_command(
    ctx: typer.Context,
    command: str,
    verb: str,
    call: Callable[[CloudManagerGateway, int, int], None],
) -> None:
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        command,
        args={"ci": options.ci, "dry_run": options.dry_run},
        target={"kind": "pipeline", "program": options.program_id, "id": options.pipeline_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        pipeline_id = _require(op, options.pipeline_id, "--pipeline")
        identifier = f"pipeline {pipeline_id} {verb}"
        if options.dry_run:
            _dry_run_complete(op, f"would {verb} pipeline {pipeline_id}")
            return
        try:
            coordinator = runtime.coordinator()
            gateway = runtime.gateway()
            with _interrupt_cancels(runtime.cancel_token):
                result = coordinator.execute(
                    ResourceRef(ResourceKind.PIPELINE, program_id, pipeline_id),
                    identifier,
                    lambda: call(gateway, program_id, pipeline_id),
                    options.ci,
                )
        except CLI_ERRORS as exc:
            _fail(op, exc)
        if result.status is ResultStatus.SUCCEEDED:
            console.print(f"[green]{identifier}: done[/green]")
            op.success(f"{identifier} accepted.", changed=1)
            return
        if result.status is ResultStatus.DEFERRED:
            message = f"{identifier} skipped: {result.message}"
            console.print(f"[yellow]{message}[/yellow]")
            op.error(message, rc=int(ExitCode.PROVIDER))
            raise typer.Exit(code=int(ExitCode.PROVIDER))
        cause = result.cause.value if result.cause is not None else "failed"
        _command_error(op, f"{identifier} failed ({cause}): {result.message}", rc=ExitCode.PROVIDER)


@pipelines_app.command("run")
def pipeline_run(ctx: typer.Context) -> None:
    """Start --pipeline once it is idle."""
    _pipeline_command(
        ctx,
        "pipeline run",
        "run",
        lambda gateway, program_id, pipeline_id: gateway.run_pipeline(program_id, pipeline_id),
    )


@pipelines_app.command("invalidate-cache")
def pipeline_invalidate_cache(ctx: typer.Context) -> None:
    """Invalidate the build cache of --pipeline once it is idle."""
    _pipeline_command(
        ctx,
        "pipeline invalidate-cache",
        "invalidate-cache",
        lambda gateway, program_id, pipeline_id: gateway.invalidate_pipeline_cache(
            program_id, pipeline_id
        ),
    )


@pipeline_vars_app.command("list")
def pipeline_vars_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the variables of --pipeline."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "pipeline vars list",
        args={"json": json_output},
        target={"kind": "pipeline", "program": options.program_id, "id": options.pipeline_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        pipeline_id = _require(op, options.pipeline_id, "--pipeline")
        resource = ResourceRef(ResourceKind.PIPELINE, program_id, pipeline_id)
        try:
            variables = runtime.gateway().fetch_variables(resource)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        _render_listing(
            op,
            key="variables",
            items=_variable_rows(variables),
            columns=_VARIABLE_COLUMNS,
            json_output=json_output,
        )


@pipeline_vars_app.command("set")
def pipeline_vars_set(ctx: typer.Context, file: Path = INPUT_FILE_ARGUMENT) -> None:
    """Reconcile pipeline variables from FILE."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "pipeline vars set",
        args={"file": str(file), "ci": options.ci, "dry_run": options.dry_run},
        target={"kind": "pipeline", "program": options.program_id, "id": options.pipeline_id},
    ) as op:
        try:
            manifest = _load_selected_manifest(runtime, file)
            targets = [
                (entry.resource, entry.variables)
                for entry in manifest.pipelines()
                if entry.variables
            ]
            _apply_variable_manifest(runtime, op, targets)
        except CLI_ERRORS as exc:
            _fail(op, exc)


@domains_app.command("list")
def domain_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the domain names of --program."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "domain list",
        args={"json": json_output},
        target={"kind": "program", "id": runtime.options.program_id},
    ) as op:
        program_id = _require(op, runtime.options.program_id, "--program")
        try:
            domains = runtime.gateway().fetch_domains(program_id)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        items = [
            {
                "id": domain.id,
                "name": domain.name,
                "status": domain.status,
                "environmentId": domain.environment_id,
                "certificateId": domain.certificate_id,
            }
            for domain in domains
        ]
        _render_listing(
            op,
            key="domains",
            items=items,
            columns=[
                ("id", "ID"),
                ("name", "Name"),
                ("status", "Status"),
                ("environmentId", "Environment"),
                ("certificateId", "Certificate"),
            ],
            json_output=json_output,
        )


@domains_app.command("create")
def domain_create(ctx: typer.Context, file: Path = INPUT_FILE_ARGUMENT) -> None:
    """Register the domain names declared in FILE."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "domain create",
        args={"file": str(file), "ci": options.ci, "dry_run": options.dry_run},
        target={"kind": "program", "id": options.program_id},
    ) as op:
        try:
            manifest = _load_selected_manifest(runtime, file)
            engine, coordinator = runtime.engine()
            gateway = runtime.gateway()
            outcome = RunOutcome()
            with _interrupt_cancels(runtime.cancel_token):
                by_program: dict[int, list[DesiredDomain]] = {}
                for domain in manifest.domains():
                    by_program.setdefault(domain.program_id, []).append(domain)
                for program_id, desired in by_program.items():
                    plan = plan_domains(desired, gateway.fetch_domains(program_id))
                    _render_plan(f"program {program_id} domains", plan)
                    engine.apply_plan(plan, ci_mode=options.ci, dry_run=options.dry_run, outcome=outcome)
                    if coordinator.cancelled:
                        break
            _finish_run(op, outcome, dry_run=options.dry_run)
        except CLI_ERRORS as exc:
            _fail(op, exc)


@certificates_app.command("list")
def certificate_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List the certificates of --program."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "certificate list",
        args={"json": json_output},
        target={"kind": "program", "id": runtime.options.program_id},
    ) as op:
        program_id = _require(op, runtime.options.program_id, "--program")
        try:
            certificates = runtime.gateway().fetch_certificates(program_id)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        items = [
            {
                "id": certificate.id,
                "name": certificate.name,
                "serialNumber": certificate.serial_number,
                "expireAt": certificate.expire_at,
            }
            for certificate in certificates
        ]
        _render_listing(
            op,
            key="certificates",
            items=items,
            columns=[
                ("id", "ID"),
                ("name", "Name"),
                ("serialNumber", "Serial"),
                ("expireAt", "Expires"),
            ],
            json_output=json_output,
        )


@certificates_app.command("manage")
def certificate_manage(ctx: typer.Context, file: Path = INPUT_FILE_ARGUMENT) -> None:
    """Create or update the certificates declared in FILE."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "certificate manage",
        args={"file": str(file), "ci": options.ci, "dry_run": options.dry_run},
        target={"kind": "program", "id": options.program_id},
    ) as op:
        try:
            manifest = _load_selected_manifest(runtime, file)
            preflight(list(manifest.certificates()))
            engine, coordinator = runtime.engine()
            gateway = runtime.gateway()
            outcome = RunOutcome()
            with _interrupt_cancels(runtime.cancel_token):
                for program in manifest.programs:
                    if not program.certificates:
                        continue
                    plan = plan_certificates(
                        program.certificates,
                        gateway.fetch_certificates(program.id),
                    )
                    _render_plan(f"program {program.id} certificates", plan)
                    engine.apply_plan(plan, ci_mode=options.ci, dry_run=options.dry_run, outcome=outcome)
                    if coordinator.cancelled:
                        break
            _finish_run(op, outcome, dry_run=options.dry_run)
        except CLI_ERRORS as exc:
            _fail(op, exc)


@log_app.command("save")
def log_save(
    ctx: typer.Context,
    service: LogService = LOG_SERVICE_OPTION,
    name: LogName = LOG_NAME_OPTION,
    day: datetime = typer.Option(
        ...,
        "--date",
        "-d",
        formats=["%Y-%m-%d"],
        help="Day of the log (YYYY-MM-DD).",
    ),
    output_dir: Path = typer.Option(
        Path("."),
        "--output-dir",
        "-o",
        file_okay=False,
        help="Directory that receives the .log.gz file.",
    ),
) -> None:
    """Download one day of a service log of --env."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "log save",
        args={"service": service.value, "log": name.value, "date": day.date().isoformat()},
        target={"kind": "environment", "program": options.program_id, "id": options.environment_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        environment_id = _require(op, options.environment_id, "--env")
        filename = log_filename(environment_id, service.value, name.value, day.date())
        try:
            content = runtime.gateway().download_log(
                program_id, environment_id, service.value, name.value, day.date()
            )
        except RemoteError as exc:
            if exc.kind is RemoteErrorKind.NOT_FOUND:
                _command_error(op, f"Logfile not found: {filename}", rc=ExitCode.PROVIDER)
            _fail(op, exc)
        except CLI_ERRORS as exc:
            _fail(op, exc)
        try:
            target = save_log(content, output_dir, filename)
        except OSError as exc:
            _command_error(op, f"Cannot write {filename}: {exc}", rc=ExitCode.ENVIRONMENT)
        console.print(f"[green]Saved[/green] {target}")
        op.success(
            f"Saved {filename}.",
            changed=1,
            context={"path": str(target), "bytes": len(content)},
        )


@log_app.command("tail")
def log_tail(
    ctx: typer.Context,
    service: LogService = LOG_SERVICE_OPTION,
    name: LogName = LOG_NAME_OPTION,
) -> None:
    """Follow a service log of --env until Ctrl-C."""
    runtime = _get_runtime(ctx)
    options = runtime.options
    with runtime.logger.operation(
        "log tail",
        args={"service": service.value, "log": name.value},
        target={"kind": "environment", "program": options.program_id, "id": options.environment_id},
    ) as op:
        program_id = _require(op, options.program_id, "--program")
        environment_id = _require(op, options.environment_id, "--env")
        try:
            gateway = runtime.gateway()
            url = gateway.log_tail_url(program_id, environment_id, service.value, name.value)
            with _interrupt_cancels(runtime.cancel_token):
                lines = follow_log(
                    gateway,
                    url,
                    lambda line: console.print(line, soft_wrap=True, highlight=False, markup=False),
                    cancel_token=runtime.cancel_token,
                    interval=TAIL_INTERVAL,
                )
        except CLI_ERRORS as exc:
            _fail(op, exc)
        op.success("Stopped tailing log.", changed=0, context={"lines": lines})


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    data["encryption_key"] = "loaded" if runtime.codec.has_key else "missing"

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


__all__ = ["app", "main"]
