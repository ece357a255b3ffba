"""CLI entrypoint.

Re-export the Typer app from the CLI surface.
"""

from .surfaces.cli.cli import app, daemon_main, main

__all__ = ["app", "daemon_main", "main"]


if __name__ == "__main__":  # pragma: no cover
    main()
