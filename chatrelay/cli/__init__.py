"""CLI package for chatrelay."""

import typer

from .formatting import _get_version
from .state import app, console

# Import command modules so their decorators register
from . import chat as _chat  # noqa: F401
from . import sessions as _sessions  # noqa: F401


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"chatrelay {_get_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Relay chat conversations to a coding agent."""


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="chatrelay")


__all__ = ["app", "cli"]
