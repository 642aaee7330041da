"""Typer-powered command line for ``cryptimgctl`` and ``cryptimgctl-create``.

``cryptimgctl`` opens, closes or reports on an existing encrypted image.
``cryptimgctl-create`` provisions a new image once and writes a helper
script that calls ``cryptimgctl`` with the right arguments.
"""
from __future__ import annotations

import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .dependencies import DependencyReport, check_dependencies
from .errors import (
    ArgumentValidationError,
    CryptImgError,
    DependencyMissingError,
    UnknownActionError,
)
from .exit_codes import ExitCode
from .lifecycle import (
    LAYER_ORDER,
    LifecycleOrchestrator,
    PipelineObservation,
    PipelineReport,
    Transition,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .passphrase import PassphraseSource, Secret
from .privilege import ensure_privileged, invoking_user, lookup_owner
from .providers.commands import CommandError
from .provisioning import CreateRequest, Provisioner, parse_size, parse_slot
from .templates import TemplateEngine, TemplateRenderError

console = Console()

ACTIONS = ("open", "close", "status")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cryptimgctl's YAML config file.",
)
LOCK_TIMEOUT_OPTION = typer.Option(
    None,
    "--lock-timeout",
    help="Override lock acquisition timeout in seconds.",
)
MOUNT_OPTION = typer.Option(
    None,
    "--mount",
    help="Directory the decrypted filesystem is mounted on.",
)
PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    help="Command printing the passphrase; runs as the invoking user.",
)

_TRANSITION_STYLE = {
    Transition.BROUGHT_UP: "green",
    Transition.BROUGHT_DOWN: "green",
    Transition.ALREADY_UP: "yellow",
    Transition.ALREADY_DOWN: "yellow",
}


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    orchestrator: LifecycleOrchestrator
    passphrase: PassphraseSource


def build_orchestrator(config: AppConfig) -> LifecycleOrchestrator:
    """Return the orchestrator used by both entry points."""
    return LifecycleOrchestrator.from_config(config)


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
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        orchestrator=build_orchestrator(config),
        passphrase=PassphraseSource(),
    )
    ctx.obj = runtime
    return runtime


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: Exception) -> NoReturn:
    """Terminate with the exit code implied by *exc*."""
    if isinstance(exc, CryptImgError):
        _command_error(op, str(exc), rc=int(exc.exit_code))
    _command_error(op, str(exc), rc=int(ExitCode.FAILURE))


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"cryptimgctl {__version__}")
        raise typer.Exit(code=0)


VERSION_OPTION = typer.Option(
    False,
    "--version",
    "-V",
    callback=_version_callback,
    is_eager=True,
    help="Show the cryptimgctl version and exit.",
)


def _render_report(report: PipelineReport, op: OperationScope) -> None:
    """Print one colored line per step and mirror it into the operation log."""
    for outcome in report.outcomes:
        if outcome.failed:
            style = "red"
        elif outcome.transition is None:
            style = "yellow"
        else:
            style = _TRANSITION_STYLE[outcome.transition]
        line = f"[{style}]{outcome.name}: {outcome.status}[/{style}]"
        if outcome.detail:
            line += f" ({escape(outcome.detail)})"
        console.print(line)
        for warning in outcome.warnings:
            console.print(f"  [yellow]warning:[/yellow] {escape(warning)}")
        op.add_step(f"{report.action}.{outcome.name}", status=outcome.status, detail=outcome.detail)


def _render_observation(observation: PipelineObservation, image: Path) -> None:
    table = Table(title=escape(str(image)))
    table.add_column("Layer")
    table.add_column("State")
    table.add_column("Identity")
    for layer in LAYER_ORDER:
        state = observation.states[layer]
        label = "[green]up[/green]" if state.active else "[yellow]down[/yellow]"
        identity = "" if state.identity is None else str(state.identity)
        table.add_row(layer.value, label, escape(identity))
    console.print(table)
    slot = "-" if observation.slot is None else str(observation.slot)
    console.print(f"Slot: {slot}  Stage: {observation.stage.value}")


def _report_context(report: PipelineReport) -> Mapping[str, object]:
    context: dict[str, object] = {
        "outcomes": {outcome.name: outcome.status for outcome in report.outcomes},
    }
    if report.target is not None:
        context["target"] = report.target.to_dict()
    return context


# ---------------------------------------------------------------------------
# cryptimgctl
# ---------------------------------------------------------------------------

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Open or close an encrypted disk image.

        Brings the image up as qemu-nbd export, NBD device, LUKS mapping and
        mounted filesystem, or tears those layers down again. Every layer is
        probed first, so repeating an action is safe.
        """
    ).strip(),
)


@app.command()
def lifecycle(
    ctx: typer.Context,
    image: Path = typer.Argument(..., help="Disk image file."),
    action: str = typer.Argument(..., help="open, close or status."),
    mount: Path | None = MOUNT_OPTION,
    password: str | None = PASSWORD_OPTION,
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
    version: bool = VERSION_OPTION,
) -> None:
    """Drive IMAGE to the state named by ACTION."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    normalized = action.strip().lower()
    with runtime.logger.operation(
        f"lifecycle {normalized}",
        args={"image": image, "action": action, "mount": mount, "password_set": bool(password)},
        target={"kind": "image", "path": image},
    ) as op:
        if normalized not in ACTIONS:
            _fail(op, UnknownActionError(f"Unknown action '{action}'. Use open, close or status."))
        if mount is None or not str(mount).strip():
            _fail(op, ArgumentValidationError("--mount is required."))
        if normalized == "open" and not (password or "").strip():
            _fail(op, ArgumentValidationError("--password is required to open an image."))

        orchestrator = runtime.orchestrator
        if normalized == "status":
            try:
                observation = orchestrator.observe(image, mount)
            except (CryptImgError, CommandError) as exc:
                _fail(op, exc)
            _render_observation(observation, image)
            op.success(
                "Reported pipeline status.",
                context={"stage": observation.stage.value, "slot": observation.slot},
            )
            return

        try:
            ensure_privileged(sys.argv, sudo_bin=runtime.config.binaries.sudo)
        except CryptImgError as exc:
            _fail(op, exc)

        try:
            with runtime.locks.mutate_image(image) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                if normalized == "open":
                    owner = invoking_user()
                    command = password or ""

                    def fetch() -> Secret:
                        return runtime.passphrase.retrieve(owner, command)

                    report = orchestrator.open(image, mount, fetch)
                else:
                    report = orchestrator.close(image, mount)
        except (CryptImgError, CommandError, LockTimeoutError) as exc:
            _fail(op, exc)

        _render_report(report, op)
        if not report.ok:
            messages = [str(error) for error in report.errors]
            _command_error(
                op,
                f"{normalized} failed for {image}.",
                rc=int(report.exit_code),
                errors=messages,
            )
        if report.warnings:
            op.warning(
                f"{normalized} completed with warnings.",
                warnings=report.warnings,
                changed=report.changed,
                context=_report_context(report),
            )
            return
        verb = "Opened" if normalized == "open" else "Closed"
        console.print(f"[green]{verb} {escape(str(image))}.[/green]")
        op.success(
            f"Image {normalized} complete.",
            changed=report.changed,
            context=_report_context(report),
        )


# ---------------------------------------------------------------------------
# cryptimgctl-create
# ---------------------------------------------------------------------------

create_app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Create a new encrypted disk image.

        Allocates a sparse image, formats a LUKS container and filesystem on
        it, and writes a helper script that opens or closes it later.
        """
    ).strip(),
)


def _render_dependencies(report: DependencyReport) -> None:
    for command, path in report.found.items():
        console.print(f"[green]found[/green] {command}: {path}")
    for command in report.missing:
        console.print(f"[red]missing[/red] {command}")


@create_app.command()
def create(
    ctx: typer.Context,
    image: Path | None = typer.Argument(None, help="Image file to create."),
    size: str | None = typer.Option(None, "--size", help="Image size, e.g. 20G."),
    mount: Path | None = MOUNT_OPTION,
    nbd: str | None = typer.Option(
        None,
        "--nbd",
        help="NBD device to use during creation (N, nbdN or /dev/nbdN).",
    ),
    owner: str | None = typer.Option(
        None,
        "--owner",
        help="User owning the image and mountpoint (defaults to the invoking user).",
    ),
    password: str | None = PASSWORD_OPTION,
    script: Path | None = typer.Option(
        None,
        "--script",
        help="Where to write the open/close helper script.",
    ),
    check_deps: bool = typer.Option(
        False,
        "--check-deps",
        help="Only verify that all external tools are installed.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
    version: bool = VERSION_OPTION,
) -> None:
    """Provision IMAGE and write its helper script."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    with runtime.logger.operation(
        "create",
        args={
            "image": image,
            "size": size,
            "mount": mount,
            "nbd": nbd,
            "owner": owner,
            "script": script,
            "check_deps": check_deps,
        },
        target={"kind": "image", "path": image},
    ) as op:
        dependencies = check_dependencies(runtime.config.binaries.required())
        if check_deps:
            _render_dependencies(dependencies)
            if not dependencies.ok:
                _fail(op, DependencyMissingError(dependencies.missing))
            op.success("All dependencies present.")
            return
        if not dependencies.ok:
            _fail(op, DependencyMissingError(dependencies.missing))

        missing = [
            flag
            for flag, value in (
                ("IMAGE", image),
                ("--size", size),
                ("--mount", mount),
                ("--password", password),
                ("--script", script),
            )
            if value is None or not str(value).strip()
        ]
        if missing:
            _fail(op, ArgumentValidationError(f"Missing required arguments: {', '.join(missing)}."))

        try:
            ensure_privileged(sys.argv, sudo_bin=runtime.config.binaries.sudo)
            request = CreateRequest(
                image=image,  # type: ignore[arg-type]
                size=parse_size(size or ""),
                mountpoint=mount,  # type: ignore[arg-type]
                owner=lookup_owner(owner) if owner else invoking_user(),
                password_command=password or "",
                script=script,  # type: ignore[arg-type]
                slot=parse_slot(nbd) if nbd else None,
            )
            provisioner = Provisioner(
                config=runtime.config,
                orchestrator=runtime.orchestrator,
                passphrase=runtime.passphrase,
                templates=runtime.templates,
            )
            with runtime.locks.mutate_image(request.image) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = provisioner.create(request)
        except (CryptImgError, CommandError, LockTimeoutError, TemplateRenderError, OSError) as exc:
            _fail(op, exc)

        for step in result.steps:
            console.print(f"[green]{step}[/green]")
            op.add_step("create", status="success", detail=step)
        close_report = result.close_report
        if close_report is not None:
            _render_report(close_report, op)
            if not close_report.ok:
                op.warning(
                    "Image created but could not be fully closed.",
                    errors=[str(error) for error in close_report.errors],
                    changed=len(result.steps),
                    rc=int(ExitCode.OK),
                )
                console.print("[yellow]Image created but left partially open.[/yellow]")
                return
        console.print(f"[green]Created {request.image}; use {request.script} open|close.[/green]")
        op.success(
            "Image created.",
            changed=len(result.steps),
            context={"target": result.target.to_dict(), "script": str(request.script)},
        )


def main() -> None:
    """Console script entry point for ``cryptimgctl``."""
    app()


def create_main() -> None:
    """Console script entry point for ``cryptimgctl-create``."""
    create_app()
