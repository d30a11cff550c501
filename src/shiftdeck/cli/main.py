"""ShiftDeck command-line entry point."""

from __future__ import annotations

import click

from shiftdeck import __version__
from shiftdeck.cli.commands.deploy import deploy
from shiftdeck.cli.commands.serve import serve


@click.group()
@click.version_option(__version__, prog_name="shiftdeck")
def main() -> None:
    """ShiftDeck - blue/green traffic-shifting deployments.

    Example:

        shiftdeck deploy run deploy.yaml

        shiftdeck serve --port 8100
    """


main.add_command(deploy)
main.add_command(serve)


if __name__ == "__main__":  # pragma: no cover
    main()
