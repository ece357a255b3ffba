from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from types import TracebackType
from typing import Any, Optional

from ..core.exceptions import ConnectError, ProtocolError
from . import protocol
from .protocol import MessageFramer

logger = logging.getLogger(__name__)

MIN_CEILING_SECONDS = 600.0
CEILING_MARGIN_SECONDS = 30.0


def wait_ceiling_seconds(timeout_ms: Optional[int]) -> float:
    """Hard upper bound on how long a CLI call waits for the daemon."""
    requested = (timeout_ms or 0) / 1000.0
    return max(MIN_CEILING_SECONDS, requested + CEILING_MARGIN_SECONDS)


class IpcClient:
    """Single-use connection from a CLI invocation to the daemon."""

    def __init__(self, socket_path: Path) -> None:
        self._socket_path = socket_path
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._framer = MessageFramer()
        self._buffered: list[dict[str, Any]] = []

    async def connect(self) -> "IpcClient":
        try:
            self._reader, self._writer = await asyncio.open_unix_connection(
                str(self._socket_path)
            )
        except (FileNotFoundError, ConnectionRefusedError) as exc:
            raise ConnectError(
                f"Daemon not reachable at {self._socket_path}: {exc}",
                user_message=(
                    "Daemon not running. Start it with: discord-notify daemon"
                ),
            ) from exc
        except OSError as exc:
            raise ConnectError(
                f"Failed to connect to {self._socket_path}: {exc}"
            ) from exc
        return self

    async def close(self) -> None:
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()

    async def __aenter__(self) -> "IpcClient":
        return await self.connect()

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def send(self, message: dict[str, Any]) -> None:
        if self._writer is None:
            raise ConnectError("Client is not connected")
        self._writer.write(protocol.encode_message(message))
        await self._writer.drain()

    async def receive(self) -> dict[str, Any]:
        if self._reader is None:
            raise ConnectError("Client is not connected")
        while not self._buffered:
            data = await self._reader.read(64 * 1024)
            if not data:
                raise ConnectError("Daemon closed the connection")
            for line in self._framer.feed(data):
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring malformed daemon record: %r", line)
                    continue
                if isinstance(payload, dict):
                    self._buffered.append(payload)
        return self._buffered.pop(0)

    async def request(
        self, message: dict[str, Any], *, timeout_seconds: float
    ) -> dict[str, Any]:
        """Send ``message`` and return the first reply."""
        await self.send(message)
        return await self._receive_within(timeout_seconds)

    async def wait_terminal(
        self, request_id: str, *, timeout_seconds: float
    ) -> dict[str, Any]:
        """Wait for ``response``/``timeout``/``error`` for ``request_id``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            remaining = deadline - loop.time()
            message = await self._receive_within(remaining)
            if not protocol.is_terminal_message(message):
                continue
            data = message.get("data") or {}
            message_request_id = data.get("requestId")
            if message_request_id is None or message_request_id == request_id:
                return message

    async def _receive_within(self, timeout_seconds: float) -> dict[str, Any]:
        if timeout_seconds <= 0:
            raise ProtocolError("Timed out waiting for the daemon", code="TIMEOUT")
        try:
            return await asyncio.wait_for(self.receive(), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ProtocolError(
                "Timed out waiting for the daemon", code="TIMEOUT"
            ) from exc


__all__ = ["IpcClient", "wait_ceiling_seconds"]
