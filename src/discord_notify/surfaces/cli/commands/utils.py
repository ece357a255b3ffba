from __future__ import annotations

import logging
from typing import NoReturn, Optional

import typer

logger = logging.getLogger("discord_notify.cli")


def get_version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("discord-notify")
    except importlib.metadata.PackageNotFoundError:
        from .... import __version__

        return __version__


def raise_exit(message: str, *, cause: Optional[BaseException] = None) -> NoReturn:
    typer.echo(message, err=True)
    if cause is not None:
        raise typer.Exit(code=1) from cause
    raise typer.Exit(code=1)


def parse_options_text(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
