from __future__ import annotations

import json
import os
import time
from pathlib import Path

from discord_notify.core.process_utils import find_processes, process_start_epoch_ms
from discord_notify.core.session_resolver import (
    encode_project_dir,
    find_session_id,
    find_session_summary,
    resolve_origin_info,
)

UPTIME_SECONDS = 1000.0


def _fake_process(
    proc_root: Path,
    pid: int,
    *,
    argv: list[str],
    cwd: str,
    ppid: int = 1,
    started_seconds_ago: float = 10.0,
) -> None:
    ticks = os.sysconf("SC_CLK_TCK")
    start_ticks = int((UPTIME_SECONDS - started_seconds_ago) * ticks)
    entry = proc_root / str(pid)
    entry.mkdir(parents=True)
    fields = ["S", str(ppid)] + ["0"] * 17 + [str(start_ticks)] + ["0"] * 5
    (entry / "stat").write_text(
        f"{pid} ({os.path.basename(argv[0])}) {' '.join(fields)}\n", encoding="utf-8"
    )
    (entry / "cmdline").write_bytes(b"\0".join(arg.encode() for arg in argv) + b"\0")
    os.symlink(cwd, entry / "cwd")


def _proc_root(tmp_path: Path) -> Path:
    root = tmp_path / "proc"
    root.mkdir()
    (root / "uptime").write_text(f"{UPTIME_SECONDS} 0.0\n", encoding="utf-8")
    return root


def _write_jsonl(path: Path, entries: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(entry) for entry in entries) + "\n", encoding="utf-8")


def test_process_start_epoch_ms_uses_uptime(tmp_path: Path) -> None:
    proc_root = _proc_root(tmp_path)
    _fake_process(proc_root, 50, argv=["claude"], cwd="/work/app", started_seconds_ago=10)

    started = process_start_epoch_ms(50, proc_root)

    expected = int((time.time() - 10) * 1000)
    assert started is not None
    assert abs(started - expected) < 2_000


def test_find_session_id_prefers_latest_match_within_window(tmp_path: Path) -> None:
    history = tmp_path / "history.jsonl"
    _write_jsonl(
        history,
        [
            {"cwd": "/work/app", "timestamp": 100_000, "sessionId": "old"},
            {"cwd": "/work/app", "timestamp": 150_000, "sessionId": "recent"},
            {"cwd": "/work/other", "timestamp": 151_000, "sessionId": "elsewhere"},
            {"project": "/work/app", "timestamp": 900_000, "sessionId": "too-late"},
        ],
    )

    assert find_session_id(history, cwd="/work/app", process_start_ms=140_000) == "recent"
    assert find_session_id(history, cwd="/work/app", process_start_ms=5_000_000) is None
    assert find_session_id(tmp_path / "missing.jsonl", cwd="/x", process_start_ms=0) is None


def test_find_session_summary_reads_project_transcript(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    _write_jsonl(
        projects / encode_project_dir("/work/app") / "sess-1.jsonl",
        [
            {"type": "user", "message": "hi"},
            {"type": "summary", "summary": "Fix login flow"},
        ],
    )

    assert encode_project_dir("/work/app") == "-work-app"
    assert find_session_summary(projects, "/work/app", "sess-1") == "Fix login flow"
    assert find_session_summary(projects, "/work/app", "nope") is None


def test_resolve_origin_climbs_from_shell_to_agent(tmp_path: Path) -> None:
    proc_root = _proc_root(tmp_path)
    home = tmp_path / "claude-home"
    _fake_process(proc_root, 50, argv=["/usr/bin/claude"], cwd="/work/app")
    _fake_process(proc_root, 100, argv=["/bin/bash", "-c", "x"], cwd="/tmp", ppid=50)
    start_ms = process_start_epoch_ms(50, proc_root)
    _write_jsonl(
        home / "history.jsonl",
        [{"cwd": "/work/app", "timestamp": start_ms + 500, "sessionId": "sess-9"}],
    )
    _write_jsonl(
        home / "projects" / "-work-app" / "sess-9.jsonl",
        [{"type": "summary", "summary": "Ship the release"}],
    )

    origin = resolve_origin_info(start_pid=100, proc_root=proc_root, home=home)

    assert origin.pid == 50
    assert origin.cwd == "/work/app"
    assert origin.session_id == "sess-9"
    assert origin.session_name == "Ship the release"
    assert origin.project_name == "app"
    assert origin.label == "Ship the release"


def test_resolve_origin_without_history_falls_back_to_project(tmp_path: Path) -> None:
    proc_root = _proc_root(tmp_path)
    _fake_process(proc_root, 70, argv=["claude"], cwd="/work/api")

    origin = resolve_origin_info(start_pid=70, proc_root=proc_root, home=tmp_path / "none")

    assert origin.pid == 70
    assert origin.session_id is None
    assert origin.session_name == "api"
    assert origin.label == "api"


def test_find_processes_filters_by_name_and_cwd_newest_first(tmp_path: Path) -> None:
    proc_root = _proc_root(tmp_path)
    _fake_process(proc_root, 10, argv=["/usr/bin/claude"], cwd="/work/app", started_seconds_ago=50)
    _fake_process(proc_root, 11, argv=["claude", "--resume"], cwd="/work/app", started_seconds_ago=5)
    _fake_process(proc_root, 12, argv=["claude"], cwd="/work/other")
    _fake_process(proc_root, 13, argv=["claude-helper"], cwd="/work/app")

    assert find_processes("claude", cwd="/work/app", proc_root=proc_root) == [11, 10]
    assert sorted(find_processes("claude", proc_root=proc_root)) == [10, 11, 12]
