"""CLI commands for blue/green deployments.

Implements the 'shiftdeck deploy' command group: run a deployment from a
request file, resume interrupted deployments, inspect status and abort.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import TypeAdapter

from shiftdeck.config.loader import (
    LoadedRequest,
    load_request,
    resolve_abort_poll_interval,
    resolve_state_dir,
)
from shiftdeck.deploy.backend import LocalBackend, open_local_backend
from shiftdeck.deploy.coordinator import CoordinatorSettings
from shiftdeck.lib.errors import ConfigError, DeploymentError, ValidationError
from shiftdeck.lib.logging_config import get_logger, setup_logging
from shiftdeck.models.deployment import Deployment, DeploymentStatus, ExitStatus

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])

# Process exit codes per deployment outcome
EXIT_CODES: dict[ExitStatus, int] = {
    ExitStatus.SUCCEEDED: 0,
    ExitStatus.ROLLED_BACK: 4,
    ExitStatus.ABORTED: 5,
    ExitStatus.FAILED_PROVISIONING: 6,
}

PHASE_COLORS = {
    "succeeded": "green",
    "rolled_back": "red",
    "rolling_back": "yellow",
}


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in deployment commands.

    Exit codes:
        2: Configuration error
        3: Deployment/execution error
        130: Interrupted; in-flight deployments stay resumable
    """
    try:
        yield
    except (ConfigError, ValidationError) as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(3)
    except KeyboardInterrupt:
        click.echo()
        click.secho(
            "Interrupted. Run 'shiftdeck deploy resume' to continue.",
            fg="yellow",
            err=True,
        )
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def _settings() -> CoordinatorSettings:
    return CoordinatorSettings(abort_poll_interval=resolve_abort_poll_interval())


def _exit_code(deployment: Deployment) -> int:
    if deployment.exit_status is None:
        return 3
    return EXIT_CODES[deployment.exit_status]


def _display_status(status: DeploymentStatus) -> None:
    """Print a deployment status block."""
    step = f" (step {status.step_index})" if status.step_index is not None else ""
    click.secho(f"Deployment {status.id}", bold=True)
    click.echo(f"  Service:  {status.service_id}")
    click.echo("  Phase:    ", nl=False)
    click.secho(
        f"{status.phase.value}{step}", fg=PHASE_COLORS.get(status.phase.value)
    )
    click.echo(f"  Outcome:  {status.outcome.value}")
    if status.exit_status is not None:
        click.echo(f"  Exit:     {status.exit_status.value}")
    click.echo(f"  Updated:  {status.last_transition_at.isoformat()}")
    if status.error is not None:
        at = status.error.phase.value
        if status.error.step_index is not None:
            at = f"{at} (step {status.error.step_index})"
        click.secho(f"  Error:    {status.error.kind.value}", fg="red")
        click.echo(f"            {status.error.message}")
        click.echo(f"            last phase reached: {at}")
    if status.cleanup_error is not None:
        click.secho(f"  Cleanup:  {status.cleanup_error}", fg="yellow")


def _display_plan(loaded: LoadedRequest, state_dir: Path) -> None:
    request = loaded.request
    click.echo()
    click.secho("Deployment Plan:", bold=True)
    click.echo(f"  Service:     {request.service_id}")
    click.echo(f"  Image:       {request.replica_spec.image}")
    click.echo(f"  Replicas:    {request.replica_spec.desired_count}")
    click.echo(
        f"  Routes:      test={request.routes.test} "
        f"production={request.routes.production}"
    )
    click.echo(f"  Pools:       blue={request.pools.blue} green={request.pools.green}")
    click.echo(f"  State dir:   {state_dir}")
    click.echo("  Canary plan:")
    for index, step in enumerate(request.canary_plan):
        click.echo(
            f"    {index}: {step.percentage:>3}% green, bake {step.bake_time:g}s"
        )
    click.echo(
        f"  Gate:        {request.required_healthy_count} healthy green target(s)"
    )
    click.echo()


@click.group(name="deploy", invoke_without_command=True)
@click.pass_context
def deploy(ctx: click.Context) -> None:
    """Run and manage blue/green deployments.

    Subcommands:

        run     Run a deployment from a request file
        resume  Resume interrupted deployments
        status  Show the status of a deployment
        list    List deployments
        abort   Abort an in-flight deployment
        prune   Archive old finished deployments

    Example:

        shiftdeck deploy run deploy.yaml

        shiftdeck deploy status 3f1c...
    """
    ctx.ensure_object(dict)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def state_dir_option(func: F) -> F:
    """Shared ``--state-dir`` option."""
    return click.option(
        "--state-dir",
        type=click.Path(file_okay=False),
        default=None,
        help=(
            "Directory holding deployment state "
            "(default: $SHIFTDECK_STATE_DIR, then .shiftdeck)"
        ),
    )(func)


def logging_options(func: F) -> F:
    """Shared ``--verbose`` / ``--quiet`` options."""
    func = click.option(
        "--quiet", "-q", is_flag=True, help="Suppress progress output"
    )(func)
    return click.option(
        "--verbose", "-v", is_flag=True, help="Enable verbose debug logging"
    )(func)


@deploy.command()
@click.argument(
    "request_file",
    type=click.Path(exists=True, dir_okay=False),
    default="deploy.yaml",
    required=False,
)
@state_dir_option
@click.option(
    "--env-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help=".env file to load (default: .env beside the request file)",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show the deployment plan without executing it",
)
@logging_options
def run(
    request_file: str,
    state_dir: str | None,
    env_file: str | None,
    dry_run: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Run a blue/green deployment.

    REQUEST_FILE is the deployment request YAML (default: deploy.yaml).

    Exits 0 when green is promoted, 4 when the deployment rolled back,
    5 when an operator aborted it and 6 when green failed to provision.

    Example:

        shiftdeck deploy run deploy.yaml

        shiftdeck deploy run deploy.yaml --dry-run
    """
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        loaded = load_request(request_file, env_file=env_file)
        resolved_dir = resolve_state_dir(state_dir, loaded.backend)

        if not quiet:
            _display_plan(loaded, resolved_dir)

        if dry_run:
            click.secho("[DRY RUN] No deployment was started", fg="yellow")
            sys.exit(0)

        deployment = asyncio.run(_run_deployment(loaded, resolved_dir, quiet))
        _display_status(deployment.to_status())
        sys.exit(_exit_code(deployment))


async def _run_deployment(
    loaded: LoadedRequest, state_dir: Path, quiet: bool
) -> Deployment:
    backend = await open_local_backend(
        state_dir, request=loaded.request, backend=loaded.backend
    )
    try:
        coordinator = backend.coordinator(_settings())
        deployment = await coordinator.start(loaded.request)
        if not quiet:
            click.echo(f"Started deployment {deployment.id}")
        result = await coordinator.run(deployment.id)
        await coordinator.wait_for_cleanups()
        return result
    finally:
        await backend.aclose()


@deploy.command()
@click.argument("deployment_id", required=False)
@state_dir_option
@logging_options
def resume(
    deployment_id: str | None, state_dir: str | None, verbose: bool, quiet: bool
) -> None:
    """Resume interrupted deployments from their last saved phase.

    With DEPLOYMENT_ID only that deployment is resumed; otherwise every
    in-flight deployment in the state directory is.
    """
    if not quiet:
        setup_logging(verbose=verbose, quiet=quiet)

    with handle_deployment_errors():
        results = asyncio.run(_resume(deployment_id, resolve_state_dir(state_dir)))
        if not results:
            click.echo("No in-flight deployments to resume.")
            sys.exit(0)
        for deployment in results:
            _display_status(deployment.to_status())
        sys.exit(max(_exit_code(d) for d in results))


async def _resume(deployment_id: str | None, state_dir: Path) -> list[Deployment]:
    backend = await open_local_backend(state_dir)
    try:
        coordinator = backend.coordinator(_settings())
        if deployment_id is not None:
            results = [await coordinator.resume(deployment_id)]
        else:
            results = await coordinator.resume_in_flight()
        await coordinator.wait_for_cleanups()
        return results
    finally:
        await backend.aclose()


@deploy.command()
@click.argument("deployment_id")
@state_dir_option
@click.option("--json", "as_json", is_flag=True, help="Output status as JSON")
def status(deployment_id: str, state_dir: str | None, as_json: bool) -> None:
    """Show the status of a deployment."""
    with handle_deployment_errors():
        result = asyncio.run(
            _with_backend(
                resolve_state_dir(state_dir),
                lambda b: b.coordinator().status(deployment_id),
            )
        )
        if as_json:
            click.echo(result.model_dump_json(indent=2))
        else:
            _display_status(result)


@deploy.command(name="list")
@state_dir_option
@click.option(
    "--all", "show_all", is_flag=True, help="Include finished deployments"
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def list_deployments(state_dir: str | None, show_all: bool, as_json: bool) -> None:
    """List in-flight deployments (or all with --all)."""
    with handle_deployment_errors():
        deployments = asyncio.run(
            _with_backend(
                resolve_state_dir(state_dir),
                lambda b: b.store.list_all() if show_all else b.store.list_in_flight(),
            )
        )
        statuses = [d.to_status() for d in deployments]

        if as_json:
            adapter = TypeAdapter(list[DeploymentStatus])
            click.echo(adapter.dump_json(statuses, indent=2).decode())
            return
        if not statuses:
            click.echo("No deployments found.")
            return
        for s in statuses:
            step = f"({s.step_index})" if s.step_index is not None else ""
            click.echo(
                f"{s.id}  {s.service_id:<20} {s.phase.value}{step:<6} "
                f"{s.outcome.value}"
            )


@deploy.command()
@click.argument("deployment_id")
@state_dir_option
def abort(deployment_id: str, state_dir: str | None) -> None:
    """Abort an in-flight deployment and roll it back.

    Only deployments that have not been promoted can be aborted. A running
    'shiftdeck deploy run' picks the request up within the abort poll
    interval.
    """
    with handle_deployment_errors():
        accepted = asyncio.run(
            _with_backend(
                resolve_state_dir(state_dir),
                lambda b: b.coordinator().abort(deployment_id),
            )
        )
        if accepted:
            click.secho(f"Abort requested for deployment {deployment_id}", fg="yellow")
        else:
            click.secho(
                f"Deployment {deployment_id} is already promoted; abort ignored",
                fg="yellow",
            )
            sys.exit(3)


@deploy.command()
@state_dir_option
def prune(state_dir: str | None) -> None:
    """Archive finished deployments older than the retention window."""
    with handle_deployment_errors():
        count = asyncio.run(
            _with_backend(
                resolve_state_dir(state_dir),
                lambda b: b.coordinator(_settings()).archive_terminal(),
            )
        )
        click.echo(f"Archived {count} deployment(s).")


async def _with_backend(
    state_dir: Path, action: Callable[[LocalBackend], Awaitable[T]]
) -> T:
    """Open the local backend, await ``action(backend)`` and close it."""
    backend = await open_local_backend(state_dir)
    try:
        return await action(backend)
    finally:
        await backend.aclose()
