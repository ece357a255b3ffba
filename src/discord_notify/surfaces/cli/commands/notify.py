from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional

import typer

from ....core.config import load_cli_config
from ....core.exceptions import ConnectError, ProtocolError
from ....core.pending.models import OriginInfo
from ....core.session_resolver import resolve_origin_info
from ....ipc import protocol
from ....ipc.client import IpcClient, wait_ceiling_seconds
from .utils import parse_options_text

ACK_TIMEOUT_SECONDS = 60.0


async def run_send(socket_path: Path, message: str, origin: OriginInfo) -> dict[str, Any]:
    """Returns the daemon's ack or error record."""
    async with IpcClient(socket_path) as client:
        return await client.request(
            protocol.send_message(message, origin),
            timeout_seconds=wait_ceiling_seconds(None),
        )


async def run_ask(
    socket_path: Path,
    question: str,
    origin: OriginInfo,
    *,
    options: list[str],
    timeout_ms: Optional[int],
    no_wait: bool,
) -> tuple[dict[str, Any], Optional[dict[str, Any]]]:
    """Returns ``(first reply, terminal record)``.

    The terminal record is ``None`` for ``no_wait`` asks and when the first
    reply is already an error.
    """
    ceiling = wait_ceiling_seconds(timeout_ms)
    async with IpcClient(socket_path) as client:
        first = await client.request(
            protocol.ask_message(
                question,
                origin,
                options=options,
                timeout_ms=timeout_ms,
                no_wait=no_wait,
            ),
            timeout_seconds=ceiling,
        )
        if first.get("type") != "ack" or no_wait:
            return first, None
        request_id = str((first.get("data") or {}).get("requestId") or "")
        terminal = await client.wait_terminal(request_id, timeout_seconds=ceiling)
        return first, terminal


async def run_simple(socket_path: Path, message: dict[str, Any]) -> dict[str, Any]:
    async with IpcClient(socket_path) as client:
        return await client.request(message, timeout_seconds=ACK_TIMEOUT_SECONDS)


def _error_text(message: dict[str, Any]) -> str:
    data = message.get("data") or {}
    if message.get("type") == "timeout":
        return "Timeout waiting for response"
    if message.get("type") == "error":
        return f"Error: {data.get('message') or data.get('code') or 'unknown error'}"
    return f"Error: unexpected reply from daemon: {message.get('type')!r}"


def register_notify_commands(
    app: typer.Typer,
    *,
    raise_exit: Callable,
    resolve_origin: Optional[Callable[[], OriginInfo]] = None,
) -> None:
    def _origin() -> OriginInfo:
        return (resolve_origin or resolve_origin_info)()

    def _socket_path() -> Path:
        return load_cli_config().socket_path

    def _run(coro: Any) -> Any:
        try:
            return asyncio.run(coro)
        except ConnectError as exc:
            raise_exit(f"Error: {exc.user_message or exc}", cause=exc)
        except ProtocolError as exc:
            raise_exit(f"Error: {exc}", cause=exc)

    @app.command("send")
    def send(message: str = typer.Argument(..., help="Message to send")) -> None:
        """Send a message without waiting for a response."""
        reply = _run(run_send(_socket_path(), message, _origin()))
        if reply.get("type") != "ack":
            raise_exit(_error_text(reply))

    @app.command("ask")
    def ask(
        question: str = typer.Argument(..., help="Question to ask"),
        options: Optional[str] = typer.Option(
            None, "--options", help="Comma-separated choices rendered as buttons"
        ),
        no_wait: bool = typer.Option(
            False, "--no-wait", help="Print the request id and exit after the ack"
        ),
        timeout: Optional[int] = typer.Option(
            None, "--timeout", help="Timeout in milliseconds"
        ),
    ) -> None:
        """Ask a question and wait for the answer."""
        first, terminal = _run(
            run_ask(
                _socket_path(),
                question,
                _origin(),
                options=parse_options_text(options),
                timeout_ms=timeout,
                no_wait=no_wait,
            )
        )
        if first.get("type") != "ack":
            raise_exit(_error_text(first))
        if no_wait:
            typer.echo((first.get("data") or {}).get("requestId", ""))
            return
        if terminal is None or terminal.get("type") != "response":
            raise_exit(_error_text(terminal or {}))
        typer.echo((terminal.get("data") or {}).get("response", ""))

    @app.command("status")
    def status(request_id: str = typer.Argument(..., help="Request id")) -> None:
        """Show the stored status of a request."""
        reply = _run(run_simple(_socket_path(), protocol.status_message(request_id)))
        if reply.get("type") != "status":
            raise_exit(_error_text(reply))
        typer.echo(json.dumps(reply.get("data") or {}, indent=2))

    @app.command("cancel")
    def cancel(request_id: str = typer.Argument(..., help="Request id")) -> None:
        """Cancel a pending request."""
        reply = _run(run_simple(_socket_path(), protocol.cancel_message(request_id)))
        if reply.get("type") != "ack":
            raise_exit(_error_text(reply))
        typer.echo(f"Cancelled {request_id}")
