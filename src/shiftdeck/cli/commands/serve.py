"""CLI command for the deployment control server.

Implements the 'shiftdeck serve' command, exposing deployment status and
abort over HTTP for the deployments in a state directory.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from shiftdeck.config.loader import resolve_abort_poll_interval, resolve_state_dir
from shiftdeck.deploy.backend import open_local_backend
from shiftdeck.deploy.coordinator import CoordinatorSettings
from shiftdeck.lib.errors import ConfigError, DeploymentError
from shiftdeck.lib.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


@click.command()
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help=(
        "Directory holding deployment state "
        "(default: $SHIFTDECK_STATE_DIR, then .shiftdeck)"
    ),
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=8100,
    help="Port to listen on (default: 8100)",
)
@click.option(
    "--host",
    "-h",
    type=str,
    default="127.0.0.1",
    help="Host to bind to (default: 127.0.0.1 for local-only access)",
)
@click.option(
    "--resume/--no-resume",
    default=False,
    help="Resume in-flight deployments in the background",
)
@click.option(
    "--debug/--no-debug",
    default=False,
    help="Enable debug logging",
)
def serve(
    state_dir: str | None, port: int, host: str, resume: bool, debug: bool
) -> None:
    """Start the deployment control server.

    Endpoints:

        GET  /health                        Server health
        GET  /deployments                   List deployments
        GET  /deployments/{id}              Deployment status
        POST /deployments/{id}/abort        Abort before promotion

    Example:

        shiftdeck serve --port 8100 --resume
    """
    setup_logging(verbose=debug)

    logger.info(
        f"Serve command invoked: state_dir={state_dir}, port={port}, "
        f"host={host}, resume={resume}"
    )

    try:
        asyncio.run(
            _run_server(
                state_dir=resolve_state_dir(state_dir),
                host=host,
                port=port,
                resume=resume,
                debug=debug,
            )
        )
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", exc_info=True)
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}", exc_info=True)
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(3)
    except KeyboardInterrupt:
        logger.info("Server interrupted by user (Ctrl+C)")
        click.echo()
        click.secho("Server stopped.", fg="yellow")
        sys.exit(130)


async def _run_server(
    state_dir: Path, host: str, port: int, resume: bool, debug: bool
) -> None:
    """Run the control server until uvicorn exits.

    Args:
        state_dir: State directory of the local backend.
        host: Host to bind to.
        port: Port to listen on.
        resume: Resume in-flight deployments in the background.
        debug: Enable debug logging in uvicorn.
    """
    import uvicorn

    from shiftdeck.serve.server import ControlServer

    backend = await open_local_backend(state_dir)
    settings = CoordinatorSettings(abort_poll_interval=resolve_abort_poll_interval())
    server = ControlServer(
        backend.coordinator(settings), host=host, port=port, resume_in_flight=resume
    )
    app = server.create_app()
    await server.start()

    click.echo()
    click.secho("ShiftDeck control server", bold=True)
    click.echo(f"  URL:        http://{host}:{port}")
    click.echo(f"  State dir:  {state_dir}")
    click.echo()

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="debug" if debug else "info",
    )
    try:
        await uvicorn.Server(config).serve()
    finally:
        await server.stop()
        await backend.aclose()
