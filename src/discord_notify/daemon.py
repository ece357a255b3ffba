from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from typing import Optional

from .core.config import NotifyConfig
from .core.delivery import RequestNotifier
from .core.logging_utils import log_event
from .core.pending.coordinator import RequestCoordinator
from .core.pending.store import PendingStore
from .core.utils import atomic_write
from .integrations.discord.constants import DISCORD_NOTIFY_INTENTS
from .integrations.discord.gateway import DiscordGatewayClient
from .integrations.discord.notifier import DiscordNotifier
from .integrations.discord.rest import DiscordRestClient
from .integrations.discord.router import ReplyRouter
from .integrations.terminal.recovery import RecoveryAdapter
from .ipc.server import IpcServer

MS_PER_DAY = 24 * 60 * 60 * 1000


class NotifyDaemon:
    """Wires store, coordinator, IPC server and the Discord edge together."""

    def __init__(
        self,
        config: NotifyConfig,
        *,
        logger: logging.Logger,
        rest_client: Optional[DiscordRestClient] = None,
        gateway_client: Optional[DiscordGatewayClient] = None,
        notifier: Optional[RequestNotifier] = None,
        recovery: Optional[RecoveryAdapter] = None,
    ) -> None:
        self._config = config
        self._logger = logger

        self._rest = (
            rest_client
            if rest_client is not None
            else DiscordRestClient(bot_token=config.bot_token or "", logger=logger)
        )
        self._owns_rest = rest_client is None

        self._gateway = (
            gateway_client
            if gateway_client is not None
            else DiscordGatewayClient(
                bot_token=config.bot_token or "",
                intents=DISCORD_NOTIFY_INTENTS,
                logger=logger,
                rest_client=self._rest,
            )
        )
        self._owns_gateway = gateway_client is None

        self._store = PendingStore(config.data_dir, durable=True)
        self._coordinator = RequestCoordinator(
            self._store, config.timeouts, logger=logger
        )
        discord_notifier = DiscordNotifier(
            self._rest, user_id=config.user_id or "", logger=logger
        )
        self._notifier = notifier if notifier is not None else discord_notifier
        self._router = ReplyRouter(
            self._coordinator,
            discord_notifier,
            user_id=config.user_id or "",
            recovery=(
                recovery
                if recovery is not None
                else RecoveryAdapter(config.recovery, logger=logger)
            ),
            logger=logger,
        )
        self._server = IpcServer(
            config.socket_path, self._coordinator, self._notifier, logger=logger
        )
        self._coordinator.set_event_sink(self._server.publish)
        self._stop_event = asyncio.Event()

    @property
    def coordinator(self) -> RequestCoordinator:
        return self._coordinator

    @property
    def server(self) -> IpcServer:
        return self._server

    @property
    def router(self) -> ReplyRouter:
        return self._router

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_forever(self) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "daemon.starting",
            socket_path=self._config.socket_path,
            data_dir=self._config.data_dir,
            pid=os.getpid(),
        )
        try:
            await self._server.ensure_available()
            self._coordinator.restore(
                retention_ms=self._config.retention_days * MS_PER_DAY
            )
            await self._server.start()
        except BaseException:
            self._coordinator.shutdown()
            if self._owns_rest:
                with contextlib.suppress(Exception):
                    await self._rest.close()
            raise
        self._write_pid_file()
        self._install_signal_handlers()
        gateway_task = asyncio.create_task(self._gateway.run(self._router.on_dispatch))
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            log_event(self._logger, logging.INFO, "daemon.ready")
            done, _ = await asyncio.wait(
                {gateway_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if gateway_task in done and not gateway_task.cancelled():
                exc = gateway_task.exception()
                if exc is not None:
                    log_event(
                        self._logger,
                        logging.ERROR,
                        "daemon.gateway.crashed",
                        exc=exc,
                    )
        finally:
            stop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_task
            if self._owns_gateway:
                with contextlib.suppress(Exception):
                    await self._gateway.stop()
            gateway_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await gateway_task
            await self._shutdown()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_stop)

    def _write_pid_file(self) -> None:
        atomic_write(self._config.pid_path, f"{os.getpid()}\n")

    def _remove_pid_file(self) -> None:
        try:
            recorded = self._config.pid_path.read_text(encoding="utf-8").strip()
        except OSError:
            return
        if recorded == str(os.getpid()):
            with contextlib.suppress(OSError):
                self._config.pid_path.unlink()

    async def _shutdown(self) -> None:
        log_event(self._logger, logging.INFO, "daemon.stopping")
        self._coordinator.shutdown()
        await self._router.aclose()
        await self._server.stop()
        if self._owns_rest:
            with contextlib.suppress(Exception):
                await self._rest.close()
        self._remove_pid_file()
        log_event(self._logger, logging.INFO, "daemon.stopped")


def create_daemon(config: NotifyConfig, *, logger: logging.Logger) -> NotifyDaemon:
    return NotifyDaemon(config, logger=logger)
