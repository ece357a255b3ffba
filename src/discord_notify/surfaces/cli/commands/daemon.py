from __future__ import annotations

import asyncio
from typing import Callable

import typer

from ....core.config import load_config
from ....core.exceptions import ConfigError, DaemonAlreadyRunningError
from ....core.logging_utils import setup_rotating_logger
from ....daemon import create_daemon

DAEMON_LOGGER_NAME = "discord_notify"


def run_daemon(raise_exit: Callable) -> None:
    try:
        config = load_config()
    except ConfigError as exc:
        raise_exit(f"Error: {exc.user_message or exc}", cause=exc)
    logger = setup_rotating_logger(DAEMON_LOGGER_NAME, config.log)
    daemon = create_daemon(config, logger=logger)
    try:
        asyncio.run(daemon.run_forever())
    except DaemonAlreadyRunningError as exc:
        raise_exit(f"Error: {exc.user_message or exc}", cause=exc)
    except KeyboardInterrupt:
        typer.echo("Daemon stopped.")


def register_daemon_commands(app: typer.Typer, *, raise_exit: Callable) -> None:
    @app.command("daemon")
    def daemon() -> None:
        """Run the daemon in the foreground."""
        run_daemon(raise_exit)
