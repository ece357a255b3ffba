import logging

import typer

from .commands.daemon import register_daemon_commands, run_daemon
from .commands.notify import register_notify_commands
from .commands.utils import get_version
from .commands.utils import raise_exit as _raise_exit

logger = logging.getLogger("discord_notify.cli")

app = typer.Typer(
    add_completion=False,
    help="Send notifications and questions to Discord DM from coding agents.",
)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"discord-notify {get_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    # `--version` is handled eagerly via `_version_callback`.
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


def daemon_main() -> None:
    """Entrypoint for ``discord-notify-daemon``."""
    try:
        run_daemon(_raise_exit)
    except typer.Exit as exc:
        raise SystemExit(exc.exit_code) from None


register_notify_commands(app, raise_exit=_raise_exit)
register_daemon_commands(app, raise_exit=_raise_exit)
