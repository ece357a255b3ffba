from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from ...core.logging_utils import log_event

KITTY_SOCKET_DIR = Path("/tmp")
KITTY_SOCKET_PREFIX = "kitty-remote"
COMMAND_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    args: Sequence[str],
    *,
    timeout: float = COMMAND_TIMEOUT_SECONDS,
    capture: bool = True,
) -> CommandResult:
    """Run ``args`` without a shell. Missing binaries report returncode 127."""
    pipe = asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=pipe,
            stderr=pipe,
        )
    except FileNotFoundError as exc:
        return CommandResult(returncode=127, stderr=str(exc))
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(returncode=-1, stderr=f"timed out after {timeout}s")
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=(stdout or b"").decode("utf-8", "replace"),
        stderr=(stderr or b"").decode("utf-8", "replace"),
    )


@dataclass(frozen=True)
class KittyTarget:
    socket_path: Path
    window_id: int
    tab_id: Optional[int] = None


def find_window_in_listing(listing: Any, pid: int) -> Optional[tuple[int, Optional[int]]]:
    """(window id, tab id) of the window running ``pid`` in ``kitty @ ls`` output."""
    if not isinstance(listing, list):
        return None
    for os_window in listing:
        if not isinstance(os_window, dict):
            continue
        for tab in os_window.get("tabs") or []:
            if not isinstance(tab, dict):
                continue
            for window in tab.get("windows") or []:
                if not isinstance(window, dict):
                    continue
                window_id = window.get("id")
                if not isinstance(window_id, int):
                    continue
                pids = [window.get("pid")]
                pids.extend(
                    proc.get("pid")
                    for proc in window.get("foreground_processes") or []
                    if isinstance(proc, dict)
                )
                if pid in pids:
                    tab_id = tab.get("id")
                    return window_id, tab_id if isinstance(tab_id, int) else None
    return None


class KittyControl:
    """Kitty remote control over every ``/tmp/kitty-remote*`` socket."""

    def __init__(
        self,
        *,
        socket_dir: Path = KITTY_SOCKET_DIR,
        runner: CommandRunner = run_command,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._socket_dir = socket_dir
        self._runner = runner
        self._logger = logger or logging.getLogger(__name__)

    def socket_paths(self) -> list[Path]:
        try:
            entries = sorted(self._socket_dir.iterdir())
        except OSError:
            return []
        return [entry for entry in entries if entry.name.startswith(KITTY_SOCKET_PREFIX)]

    def is_available(self) -> bool:
        return bool(self.socket_paths())

    async def find_target(self, pid: int) -> Optional[KittyTarget]:
        for socket_path in self.socket_paths():
            result = await self._runner(
                ["kitty", "@", "--to", f"unix:{socket_path}", "ls"]
            )
            if result.returncode != 0:
                log_event(
                    self._logger,
                    logging.DEBUG,
                    "recovery.kitty.ls_failed",
                    socket_path=socket_path,
                    returncode=result.returncode,
                )
                continue
            try:
                listing = json.loads(result.stdout)
            except json.JSONDecodeError:
                continue
            match = find_window_in_listing(listing, pid)
            if match is not None:
                window_id, tab_id = match
                return KittyTarget(socket_path=socket_path, window_id=window_id, tab_id=tab_id)
        return None

    async def inject(self, target: KittyTarget, text: str) -> bool:
        base = ["kitty", "@", "--to", f"unix:{target.socket_path}"]
        match = f"id:{target.window_id}"
        sent = await self._runner([*base, "send-text", "--match", match, text])
        if sent.returncode != 0:
            log_event(
                self._logger,
                logging.WARNING,
                "recovery.kitty.send_text_failed",
                window_id=target.window_id,
                stderr=sent.stderr,
            )
            return False
        pressed = await self._runner([*base, "send-key", "--match", match, "enter"])
        if pressed.returncode != 0:
            log_event(
                self._logger,
                logging.WARNING,
                "recovery.kitty.send_key_failed",
                window_id=target.window_id,
                stderr=pressed.stderr,
            )
            return False
        return True
