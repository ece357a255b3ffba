from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
from pathlib import Path
from typing import Any, Optional

from ..core.delivery import RequestNotifier
from ..core.exceptions import DaemonAlreadyRunningError, DeliveryError, ProtocolError
from ..core.logging_utils import log_event
from ..core.pending.coordinator import RequestCoordinator
from ..core.pending.models import (
    PendingRequest,
    RequestAnswered,
    RequestErrored,
    RequestEvent,
    RequestKind,
    RequestTimedOut,
)
from . import protocol
from .protocol import (
    AskCommand,
    CancelCommand,
    ClientCommand,
    MessageFramer,
    SendCommand,
    StatusCommand,
)

SOCKET_MODE = 0o600
PROBE_TIMEOUT_SECONDS = 1.0
READ_CHUNK_BYTES = 64 * 1024

_connection_ids = itertools.count(1)


class IpcConnection:
    """One CLI invocation.

    Terminal messages for a request whose ack has not been written yet are
    held and written right after the ack.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        logger: logging.Logger,
    ) -> None:
        self.id = next(_connection_ids)
        self.reader = reader
        self.writer = writer
        self.framer = MessageFramer()
        self._logger = logger
        self._awaiting_ack: dict[str, list[dict[str, Any]]] = {}
        self.closed = False

    def write(self, message: dict[str, Any]) -> None:
        if self.closed or self.writer.is_closing():
            log_event(
                self._logger,
                logging.DEBUG,
                "ipc.write.dropped",
                connection_id=self.id,
                message_type=message.get("type"),
            )
            return
        self.writer.write(protocol.encode_message(message))

    async def drain(self) -> None:
        if self.closed or self.writer.is_closing():
            return
        try:
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            log_event(
                self._logger,
                logging.DEBUG,
                "ipc.drain.failed",
                connection_id=self.id,
                exc=exc,
            )

    def hold_until_ack(self, request_id: str) -> None:
        self._awaiting_ack.setdefault(request_id, [])

    def send_terminal(self, request_id: str, message: dict[str, Any]) -> None:
        held = self._awaiting_ack.get(request_id)
        if held is not None:
            held.append(message)
            return
        self.write(message)

    def write_ack(self, request_id: str, discord_message_id: str) -> None:
        held = self._awaiting_ack.pop(request_id, [])
        self.write(protocol.ack(request_id, discord_message_id))
        for message in held:
            self.write(message)

    def discard_held(self, request_id: str) -> None:
        self._awaiting_ack.pop(request_id, None)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._awaiting_ack.clear()
        with contextlib.suppress(Exception):
            self.writer.close()


class IpcServer:
    def __init__(
        self,
        socket_path: Path,
        coordinator: RequestCoordinator,
        notifier: RequestNotifier,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._socket_path = socket_path
        self._coordinator = coordinator
        self._notifier = notifier
        self._logger = logger or logging.getLogger(__name__)
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: set[IpcConnection] = set()
        self._waiters: dict[str, IpcConnection] = {}

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    def waiter_for(self, request_id: str) -> Optional[IpcConnection]:
        return self._waiters.get(request_id)

    async def start(self) -> None:
        await self.ensure_available()
        self._server = await asyncio.start_unix_server(
            self._handle_client, path=str(self._socket_path)
        )
        os.chmod(self._socket_path, SOCKET_MODE)
        log_event(
            self._logger,
            logging.INFO,
            "ipc.listening",
            socket_path=self._socket_path,
        )

    async def stop(self) -> None:
        server = self._server
        self._server = None
        if server is not None:
            server.close()
        for connection in list(self._connections):
            connection.close()
        self._connections.clear()
        self._waiters.clear()
        if server is not None:
            with contextlib.suppress(Exception):
                await asyncio.wait_for(server.wait_closed(), timeout=5.0)
        with contextlib.suppress(FileNotFoundError):
            self._socket_path.unlink()
        log_event(self._logger, logging.INFO, "ipc.stopped")

    async def ensure_available(self) -> None:
        """Fail if a live daemon owns the socket; remove a stale socket file."""
        path = self._socket_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if not os.path.lexists(path):
            return
        if await probe_socket(path):
            raise DaemonAlreadyRunningError(
                f"Another daemon is listening on {path}",
                user_message=f"discord-notify daemon is already running ({path}).",
            )
        log_event(
            self._logger,
            logging.WARNING,
            "ipc.stale_socket.removed",
            socket_path=path,
        )
        with contextlib.suppress(FileNotFoundError):
            path.unlink()

    # Event fan-out

    def publish(self, event: RequestEvent) -> None:
        """Event sink for the coordinator: route to the waiting connection."""
        connection = self._waiters.pop(event.request_id, None)
        if connection is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "ipc.event.no_waiter",
                request_id=event.request_id,
                event_type=type(event).__name__,
            )
            return
        if isinstance(event, RequestAnswered):
            message = protocol.response(
                event.request_id, event.answer_text, event.answered_at
            )
        elif isinstance(event, RequestTimedOut):
            message = protocol.timeout(event.request_id)
        elif isinstance(event, RequestErrored):
            message = protocol.error(
                event.code, event.detail, request_id=event.request_id
            )
        else:
            return
        connection.send_terminal(event.request_id, message)
        log_event(
            self._logger,
            logging.INFO,
            "ipc.terminal.routed",
            request_id=event.request_id,
            connection_id=connection.id,
            message_type=message["type"],
        )

    # Connection handling

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection = IpcConnection(reader, writer, logger=self._logger)
        self._connections.add(connection)
        log_event(
            self._logger,
            logging.DEBUG,
            "ipc.connection.opened",
            connection_id=connection.id,
        )
        try:
            while not connection.closed:
                try:
                    data = await reader.read(READ_CHUNK_BYTES)
                except (ConnectionError, OSError):
                    break
                if not data:
                    break
                try:
                    lines = connection.framer.feed(data)
                except ProtocolError as exc:
                    connection.write(protocol.error(exc.code, str(exc)))
                    await connection.drain()
                    continue
                for line in lines:
                    await self._handle_line(connection, line)
        finally:
            self._forget(connection)
            connection.close()
            log_event(
                self._logger,
                logging.DEBUG,
                "ipc.connection.closed",
                connection_id=connection.id,
            )

    def _forget(self, connection: IpcConnection) -> None:
        self._connections.discard(connection)
        for request_id in [
            key for key, value in self._waiters.items() if value is connection
        ]:
            del self._waiters[request_id]

    async def _handle_line(self, connection: IpcConnection, line: str) -> None:
        try:
            command = protocol.parse_client_message(line)
        except ProtocolError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "ipc.message.invalid",
                connection_id=connection.id,
                code=exc.code,
                exc=exc,
            )
            connection.write(
                protocol.error(exc.code, str(exc), request_id=exc.request_id)
            )
            await connection.drain()
            return
        try:
            await self._dispatch(connection, command)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "ipc.message.failed",
                connection_id=connection.id,
                command=type(command).__name__,
                exc=exc,
            )
            connection.write(protocol.error(protocol.INTERNAL_ERROR, str(exc)))
        await connection.drain()

    async def _dispatch(self, connection: IpcConnection, command: ClientCommand) -> None:
        if isinstance(command, SendCommand):
            request = self._coordinator.create_request(
                RequestKind.SEND, command.message, command.origin
            )
            await self._deliver(connection, request)
        elif isinstance(command, AskCommand):
            request = self._coordinator.create_request(
                RequestKind.ASK,
                command.message,
                command.origin,
                options=command.options,
                timeout_ms=command.timeout_ms,
                no_wait=command.no_wait,
            )
            if request.waits_for_answer:
                self._waiters[request.id] = connection
                connection.hold_until_ack(request.id)
            await self._deliver(connection, request)
        elif isinstance(command, StatusCommand):
            self._handle_status(connection, command)
        elif isinstance(command, CancelCommand):
            self._handle_cancel(connection, command)

    async def _deliver(self, connection: IpcConnection, request: PendingRequest) -> None:
        try:
            delivered = await self._notifier.deliver(request)
        except DeliveryError as exc:
            self._drop_waiter(request.id, connection)
            connection.discard_held(request.id)
            self._coordinator.record_error(
                request.id, str(exc), code=protocol.DELIVERY_FAILED
            )
            connection.write(
                protocol.error(
                    protocol.DELIVERY_FAILED,
                    exc.user_message or str(exc),
                    request_id=request.id,
                )
            )
            return
        except Exception:
            self._drop_waiter(request.id, connection)
            connection.discard_held(request.id)
            self._coordinator.record_error(
                request.id, "delivery failed", code=protocol.INTERNAL_ERROR
            )
            raise
        self._coordinator.attach_external_ref(
            request.id, delivered.message_id, channel_ref=delivered.channel_id
        )
        connection.write_ack(request.id, delivered.message_id)
        log_event(
            self._logger,
            logging.INFO,
            "ipc.request.acked",
            request_id=request.id,
            kind=request.kind.value,
            connection_id=connection.id,
            waiting=request.id in self._waiters,
        )

    def _drop_waiter(self, request_id: str, connection: IpcConnection) -> None:
        if self._waiters.get(request_id) is connection:
            del self._waiters[request_id]

    def _handle_status(self, connection: IpcConnection, command: StatusCommand) -> None:
        request = self._coordinator.lookup(command.request_id)
        if request is None:
            connection.write(
                protocol.error(
                    protocol.NOT_FOUND,
                    "Request not found",
                    request_id=command.request_id,
                )
            )
            return
        connection.write(
            protocol.status(request, self._coordinator.response(command.request_id))
        )

    def _handle_cancel(self, connection: IpcConnection, command: CancelCommand) -> None:
        request_id = command.request_id
        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and waiter is not connection:
            waiter.send_terminal(
                request_id,
                protocol.error(
                    protocol.CANCELLED, "Request was cancelled", request_id=request_id
                ),
            )
        self._coordinator.cancel(request_id)
        connection.write(protocol.ack(request_id, ""))


async def probe_socket(path: Path, *, timeout: float = PROBE_TIMEOUT_SECONDS) -> bool:
    """True when something accepts connections on ``path``."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=timeout
        )
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return True


__all__ = ["IpcConnection", "IpcServer", "probe_socket"]
