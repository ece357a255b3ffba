from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Iterator, Optional

PROC_ROOT = Path("/proc")


def pid_is_running(pid: Optional[int]) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    if _pid_is_zombie(pid):
        return False
    return True


def _pid_is_zombie(pid: int, proc_root: Path = PROC_ROOT) -> bool:
    stat = read_proc_stat(pid, proc_root)
    return stat is not None and stat[0] == "Z"


def read_proc_stat(pid: int, proc_root: Path = PROC_ROOT) -> Optional[list[str]]:
    """Fields of ``/proc/<pid>/stat`` after the command name.

    Index 0 is the state, index 1 the parent pid, index 19 the start time in
    clock ticks since boot.
    """
    try:
        raw = (proc_root / str(pid) / "stat").read_text(encoding="utf-8")
    except OSError:
        return None
    # The command name is parenthesised and may contain spaces.
    _, _, rest = raw.rpartition(")")
    fields = rest.split()
    return fields or None


def parent_pid(pid: int, proc_root: Path = PROC_ROOT) -> Optional[int]:
    stat = read_proc_stat(pid, proc_root)
    if stat is None or len(stat) < 2:
        return None
    try:
        return int(stat[1])
    except ValueError:
        return None


def read_cmdline(pid: int, proc_root: Path = PROC_ROOT) -> list[str]:
    try:
        raw = (proc_root / str(pid) / "cmdline").read_bytes()
    except OSError:
        return []
    return [part.decode("utf-8", "replace") for part in raw.split(b"\0") if part]


def read_cwd(pid: int, proc_root: Path = PROC_ROOT) -> Optional[str]:
    try:
        return os.readlink(proc_root / str(pid) / "cwd")
    except OSError:
        return None


def process_start_epoch_ms(pid: int, proc_root: Path = PROC_ROOT) -> Optional[int]:
    stat = read_proc_stat(pid, proc_root)
    if stat is None or len(stat) < 20:
        return None
    try:
        start_ticks = int(stat[19])
        uptime_raw = (proc_root / "uptime").read_text(encoding="utf-8").split()[0]
        uptime_seconds = float(uptime_raw)
    except (OSError, ValueError, IndexError):
        return None
    ticks_per_second = os.sysconf("SC_CLK_TCK")

    boot_epoch = time.time() - uptime_seconds
    return int((boot_epoch + start_ticks / ticks_per_second) * 1000)


def iter_pids(proc_root: Path = PROC_ROOT) -> Iterator[int]:
    try:
        entries = list(proc_root.iterdir())
    except OSError:
        return
    for entry in entries:
        if entry.name.isdigit():
            yield int(entry.name)


def find_processes(
    name: str, *, cwd: Optional[str] = None, proc_root: Path = PROC_ROOT
) -> list[int]:
    """Pids whose argv[0] basename is ``name``, newest first."""
    matches: list[tuple[int, int]] = []
    for pid in iter_pids(proc_root):
        argv = read_cmdline(pid, proc_root)
        if not argv or os.path.basename(argv[0]) != name:
            continue
        if cwd is not None and read_cwd(pid, proc_root) != cwd:
            continue
        stat = read_proc_stat(pid, proc_root)
        start = 0
        if stat is not None and len(stat) >= 20 and stat[19].isdigit():
            start = int(stat[19])
        matches.append((start, pid))
    matches.sort(reverse=True)
    return [pid for _, pid in matches]


__all__ = [
    "find_processes",
    "parent_pid",
    "pid_is_running",
    "process_start_epoch_ms",
    "read_cmdline",
    "read_cwd",
]
