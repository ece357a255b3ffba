from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from .pending.models import OriginInfo
from .process_utils import (
    PROC_ROOT,
    parent_pid,
    process_start_epoch_ms,
    read_cmdline,
    read_cwd,
)

logger = logging.getLogger(__name__)

AGENT_BINARY = "claude"
SESSION_MATCH_WINDOW_MS = 60 * 1000


def claude_home() -> Path:
    return Path.home() / ".claude"


def _mentions_agent(pid: int, proc_root: Path) -> bool:
    return AGENT_BINARY in " ".join(read_cmdline(pid, proc_root))


def resolve_origin_info(
    *,
    start_pid: Optional[int] = None,
    proc_root: Path = PROC_ROOT,
    home: Optional[Path] = None,
) -> OriginInfo:
    """Describe the agent process that invoked the CLI.

    Starts from the parent pid and climbs one level when the parent is a
    shell rather than the agent. Every lookup is best effort; the result
    always carries a pid and a cwd.
    """
    agent_home = home if home is not None else claude_home()
    pid = start_pid if start_pid is not None else os.getppid()
    cwd = read_cwd(pid, proc_root)

    if not _mentions_agent(pid, proc_root):
        grandparent = parent_pid(pid, proc_root)
        if grandparent and _mentions_agent(grandparent, proc_root):
            pid = grandparent
            cwd = read_cwd(grandparent, proc_root) or cwd

    session_id = None
    if cwd:
        start_ms = process_start_epoch_ms(pid, proc_root)
        if start_ms is not None:
            session_id = find_session_id(
                agent_home / "history.jsonl", cwd=cwd, process_start_ms=start_ms
            )
    project_name = Path(cwd).name if cwd else None
    session_name = project_name
    if session_id and cwd:
        session_name = (
            find_session_summary(agent_home / "projects", cwd, session_id)
            or project_name
        )
    return OriginInfo(
        pid=pid,
        cwd=cwd or os.getcwd(),
        session_id=session_id,
        session_name=session_name,
        project_name=project_name or None,
    )


def _iter_jsonl(path: Path) -> list[dict]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    entries = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict):
            entries.append(entry)
    return entries


def find_session_id(
    history_path: Path, *, cwd: str, process_start_ms: int
) -> Optional[str]:
    """Most recent history entry for ``cwd`` within a minute of process start."""
    for entry in reversed(_iter_jsonl(history_path)):
        if entry.get("cwd") != cwd and entry.get("project") != cwd:
            continue
        timestamp = entry.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            continue
        if abs(int(timestamp) - process_start_ms) > SESSION_MATCH_WINDOW_MS:
            continue
        session_id = entry.get("sessionId") or entry.get("session_id")
        if isinstance(session_id, str) and session_id:
            return session_id
    return None


def encode_project_dir(cwd: str) -> str:
    return cwd.replace("/", "-")


def find_session_summary(
    projects_dir: Path, cwd: str, session_id: str
) -> Optional[str]:
    session_file = projects_dir / encode_project_dir(cwd) / f"{session_id}.jsonl"
    for entry in _iter_jsonl(session_file):
        if entry.get("type") != "summary":
            continue
        summary = entry.get("summary")
        if isinstance(summary, str) and summary.strip():
            return summary.strip()
    return None


__all__ = [
    "encode_project_dir",
    "find_session_id",
    "find_session_summary",
    "resolve_origin_info",
]
