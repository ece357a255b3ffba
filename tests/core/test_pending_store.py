from __future__ import annotations

import json
from pathlib import Path

from discord_notify.core.pending.models import (
    OriginInfo,
    PendingRequest,
    PendingResponse,
    RequestKind,
    ResponseStatus,
    TerminalBinding,
)
from discord_notify.core.pending.store import PendingStore


def _request(request_id: str = "r1", **overrides) -> PendingRequest:
    fields = dict(
        id=request_id,
        kind=RequestKind.ASK,
        message="Deploy now?",
        origin=OriginInfo(pid=4242, cwd="/work/app", session_id="sess-1"),
        created_at=1_000,
        timeout_ms=300_000,
        options=("Yes", "No"),
    )
    fields.update(overrides)
    return PendingRequest(**fields)


def test_load_returns_empty_snapshot_when_files_missing(tmp_path: Path) -> None:
    snapshot = PendingStore(tmp_path / "data").load()

    assert snapshot.requests == {}
    assert snapshot.responses == {}
    assert snapshot.message_to_request == {}
    assert snapshot.terminals == {}


def test_save_and_load_preserves_all_four_collections(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    request = _request(external_message_ref="m-1", channel_ref="c-1", deadline_at=5_000)
    answered = PendingResponse(
        request_id="r1",
        status=ResponseStatus.ANSWERED,
        answer_text="Yes",
        answered_at=2_000,
    )
    binding = TerminalBinding(pid=4242, cwd="/work/app", session_id="sess-1", created_at=1_000)

    store.save_requests({"r1": request}, {"r1": answered})
    store.save_sessions({"m-1": "r1"}, {"r1": binding})
    snapshot = PendingStore(tmp_path).load()

    assert snapshot.requests["r1"] == request
    assert snapshot.responses["r1"] == answered
    assert snapshot.message_to_request == {"m-1": "r1"}
    assert snapshot.terminals["r1"] == binding


def test_documents_are_versioned_json(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    store.save_requests({"r1": _request()}, {"r1": PendingResponse(request_id="r1")})

    payload = json.loads(store.pending_path.read_text(encoding="utf-8"))

    assert payload["version"] == 1
    assert payload["requests"]["r1"]["kind"] == "ask"
    assert payload["requests"]["r1"]["origin"]["session_id"] == "sess-1"
    assert payload["responses"]["r1"] == {"request_id": "r1", "status": "pending"}


def test_corrupt_document_is_quarantined_and_treated_as_empty(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    store.pending_path.write_text("{not json", encoding="utf-8")
    store.save_sessions({"m-1": "r1"}, {})

    snapshot = store.load()

    assert snapshot.requests == {}
    assert snapshot.message_to_request == {"m-1": "r1"}
    assert not store.pending_path.exists()
    backups = list(tmp_path.glob("pending.json.corrupt.*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "{not json"


def test_undecodable_documents_are_quarantined(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    store.pending_path.write_bytes(b"\x80\x81garbage")
    store.sessions_path.write_bytes(b"\x80\x81")

    snapshot = store.load()

    assert snapshot.requests == {}
    assert snapshot.message_to_request == {}
    assert not store.pending_path.exists()
    assert not store.sessions_path.exists()
    assert len(list(tmp_path.glob("pending.json.corrupt.*"))) == 1
    assert len(list(tmp_path.glob("sessions.json.corrupt.*"))) == 1


def test_invalid_records_are_skipped_individually(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    store.save_requests({"r1": _request()}, {})
    payload = json.loads(store.pending_path.read_text(encoding="utf-8"))
    payload["requests"]["broken"] = {"id": "broken", "kind": "nope"}
    store.pending_path.write_text(json.dumps(payload), encoding="utf-8")

    snapshot = store.load()

    assert list(snapshot.requests) == ["r1"]


def test_save_leaves_no_temp_files(tmp_path: Path) -> None:
    store = PendingStore(tmp_path)
    store.save_requests({"r1": _request()}, {})
    store.save_requests({}, {})

    assert sorted(p.name for p in tmp_path.iterdir()) == ["pending.json"]
