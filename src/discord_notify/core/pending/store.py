from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, TypeVar

from ..logging_utils import log_event
from ..time_utils import utc_stamp
from ..utils import atomic_write
from .models import PendingRequest, PendingResponse, StoreSnapshot, TerminalBinding

PENDING_FILENAME = "pending.json"
SESSIONS_FILENAME = "sessions.json"
STORE_VERSION = 1
CORRUPT_SUFFIX = ".corrupt"

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PendingStore:
    """Two JSON documents under the data directory.

    ``pending.json`` holds requests and responses, ``sessions.json`` holds the
    message index and the terminal bindings. Each save rewrites the whole
    document atomically; the two files are saved independently.
    """

    def __init__(self, data_dir: Path, *, durable: bool = False) -> None:
        self._data_dir = data_dir
        self._pending_path = data_dir / PENDING_FILENAME
        self._sessions_path = data_dir / SESSIONS_FILENAME
        self._durable = durable

    @property
    def pending_path(self) -> Path:
        return self._pending_path

    @property
    def sessions_path(self) -> Path:
        return self._sessions_path

    def load(self) -> StoreSnapshot:
        snapshot = StoreSnapshot()
        pending = self._read_document(self._pending_path)
        if pending is not None:
            snapshot.requests = _parse_records(
                pending.get("requests"), PendingRequest.from_dict, "request"
            )
            snapshot.responses = _parse_records(
                pending.get("responses"), PendingResponse.from_dict, "response"
            )
        sessions = self._read_document(self._sessions_path)
        if sessions is not None:
            index = sessions.get("message_to_request")
            if isinstance(index, dict):
                snapshot.message_to_request = {
                    str(ref): str(request_id)
                    for ref, request_id in index.items()
                    if isinstance(request_id, str) and request_id
                }
            snapshot.terminals = _parse_records(
                sessions.get("request_to_terminal"),
                TerminalBinding.from_dict,
                "terminal",
            )
        return snapshot

    def save_requests(
        self,
        requests: Mapping[str, PendingRequest],
        responses: Mapping[str, PendingResponse],
    ) -> None:
        payload = {
            "version": STORE_VERSION,
            "requests": {key: value.to_dict() for key, value in requests.items()},
            "responses": {key: value.to_dict() for key, value in responses.items()},
        }
        self._write_document(self._pending_path, payload)

    def save_sessions(
        self,
        message_to_request: Mapping[str, str],
        terminals: Mapping[str, TerminalBinding],
    ) -> None:
        payload = {
            "version": STORE_VERSION,
            "message_to_request": dict(message_to_request),
            "request_to_terminal": {
                key: value.to_dict() for key, value in terminals.items()
            },
        }
        self._write_document(self._sessions_path, payload)

    def _write_document(self, path: Path, payload: dict[str, Any]) -> None:
        atomic_write(path, json.dumps(payload, indent=2) + "\n", self._durable)

    def _read_document(self, path: Path) -> Optional[dict[str, Any]]:
        if not path.exists():
            return None
        try:
            raw = path.read_bytes()
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "pending.store.read_failed",
                path=path,
                exc=exc,
            )
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self._quarantine(path, str(exc))
            return None
        if not isinstance(data, dict):
            self._quarantine(path, f"Expected JSON object, got {type(data).__name__}")
            return None
        return data

    def _quarantine(self, path: Path, detail: str) -> None:
        backup_path = path.with_name(f"{path.name}{CORRUPT_SUFFIX}.{utc_stamp()}")
        try:
            path.replace(backup_path)
            backup_value: Optional[Path] = backup_path
        except OSError:
            backup_value = None
        log_event(
            logger,
            logging.WARNING,
            "pending.store.corrupt",
            path=path,
            detail=detail,
            backup_path=backup_value,
        )


def _parse_records(
    raw: Any, parse: Callable[[dict[str, Any]], T], kind: str
) -> dict[str, T]:
    if not isinstance(raw, dict):
        return {}
    parsed: dict[str, T] = {}
    for key, value in raw.items():
        try:
            parsed[str(key)] = parse(value)
        except (TypeError, ValueError) as exc:
            log_event(
                logger,
                logging.WARNING,
                "pending.store.record_skipped",
                kind=kind,
                key=key,
                exc=exc,
            )
    return parsed


__all__ = ["PendingStore", "PENDING_FILENAME", "SESSIONS_FILENAME"]
