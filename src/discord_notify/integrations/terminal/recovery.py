from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ...core.config import RecoveryConfig
from ...core.exceptions import RecoveryFailure
from ...core.logging_utils import log_event
from ...core.process_utils import find_processes
from .kitty import CommandRunner, KittyControl, run_command

ProcessFinder = Callable[..., list[int]]


class RecoveryAdapter:
    """Relaunch a dead agent session in a new kitty window and type the answer.

    ``attempt_resume`` never raises; every failure is logged and reported as
    ``False``.
    """

    def __init__(
        self,
        config: RecoveryConfig,
        *,
        kitty: Optional[KittyControl] = None,
        runner: CommandRunner = run_command,
        find_pids: ProcessFinder = find_processes,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._kitty = kitty or KittyControl(runner=runner, logger=self._logger)
        self._runner = runner
        self._find_pids = find_pids
        self._sleep = sleep

    def resume_command(self, session_id: str) -> list[str]:
        return [
            part.replace("{session_id}", session_id)
            for part in self._config.resume_command
        ]

    async def attempt_resume(self, session_id: str, cwd: str, text: str) -> bool:
        if not self._config.enabled:
            return False
        try:
            await self._resume(session_id, cwd, text)
        except asyncio.CancelledError:
            raise
        except RecoveryFailure as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "recovery.failed",
                session_id=session_id,
                cwd=cwd,
                reason=str(exc),
            )
            return False
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "recovery.crashed",
                session_id=session_id,
                cwd=cwd,
                exc=exc,
            )
            return False
        log_event(
            self._logger,
            logging.INFO,
            "recovery.injected",
            session_id=session_id,
            cwd=cwd,
        )
        return True

    async def _resume(self, session_id: str, cwd: str, text: str) -> None:
        launch = [
            "kitty",
            "--detach",
            "--directory",
            cwd,
            "-e",
            *self.resume_command(session_id),
        ]
        log_event(
            self._logger,
            logging.INFO,
            "recovery.launching",
            session_id=session_id,
            command=launch,
        )
        result = await self._runner(launch, capture=False)
        if result.returncode != 0:
            raise RecoveryFailure(
                f"kitty launch exited with {result.returncode}: {result.stderr.strip()}"
            )
        await self._sleep(self._config.launch_delay_seconds)
        pids = self._find_pids(self._config.process_name, cwd=cwd)
        if not pids:
            raise RecoveryFailure(
                f"no {self._config.process_name} process found in {cwd}"
            )
        for pid in pids:
            target = await self._kitty.find_target(pid)
            if target is None:
                continue
            if not await self._kitty.inject(target, text):
                raise RecoveryFailure(f"injection into kitty window {target.window_id} failed")
            return
        raise RecoveryFailure(f"no kitty window found for pids {pids}")
